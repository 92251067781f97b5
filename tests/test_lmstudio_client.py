import json

import pytest
import respx
from httpx import Response

from counsel_intake.llm import LMStudioClient, message_content, resolve_model_id


def _models(respx_mock, ids=("test-model",)):
    respx_mock.get("http://lm.test/v1/models").mock(
        return_value=Response(200, json={"data": [{"id": mid} for mid in ids]})
    )


@pytest.mark.asyncio
async def test_list_models_hits_models_endpoint():
    client = LMStudioClient("http://lm.test/v1")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            _models(respx_mock)
            data = await client.list_models()
            assert data["data"][0]["id"] == "test-model"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_completion_payload_shape_and_caps_tokens():
    client = LMStudioClient("http://lm.test/v1", max_output_tokens=5)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            _models(respx_mock)

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"choices": [{"message": {"content": "ok"}}]})

            respx_mock.post("http://lm.test/v1/chat/completions").mock(side_effect=handler)
            resp = await client.chat_completion(
                model="test-model",
                messages=[
                    {"role": "system", "content": "sys"},
                    {"role": "tool", "content": "dropped"},
                    {"role": "user", "content": "  "},
                    {"role": "user", "content": "hi"},
                ],
                temperature=0.5,
                max_tokens=20,
            )
            assert message_content(resp) == "ok"
            payload = captured["json"]
            assert payload["model"] == "test-model"
            assert payload["max_tokens"] == 5
            assert payload["temperature"] == 0.5
            assert payload["stream"] is False
            assert [m["role"] for m in payload["messages"]] == ["system", "user"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_stream_text_yields_content_deltas():
    client = LMStudioClient("http://lm.test/v1")
    lines = [
        'data: {"choices": [{"delta": {"role": "assistant"}}]}',
        'data: {"choices": [{"delta": {"content": "Hello"}}]}',
        ": keep-alive",
        "data: not-json",
        'data: {"choices": [{"delta": {"content": " there"}}]}',
        "data: [DONE]",
        'data: {"choices": [{"delta": {"content": "ignored"}}]}',
    ]
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            _models(respx_mock)
            respx_mock.post("http://lm.test/v1/chat/completions").mock(
                return_value=Response(200, text="\n\n".join(lines), headers={"content-type": "text/event-stream"})
            )
            chunks = [c async for c in client.stream_text("test-model", [{"role": "user", "content": "hi"}])]
            assert chunks == ["Hello", " there"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unknown_model_is_rejected_before_request():
    client = LMStudioClient("http://lm.test/v1")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            _models(respx_mock, ids=("other-model",))
            with pytest.raises(ValueError, match="model not found"):
                await client.chat_completion(model="test-model", messages=[{"role": "user", "content": "hi"}])
    finally:
        await client.close()


def test_resolve_model_id_matches_by_name_and_size():
    available = ["qwen/qwen3-8b", "lmstudio-community/llama-3.2-3b"]
    assert resolve_model_id("qwen3-8b", available) == "qwen/qwen3-8b"
    assert resolve_model_id("qwen/qwen3-8b:latest", available) == "qwen/qwen3-8b"
    assert resolve_model_id("something-3b", available) == "lmstudio-community/llama-3.2-3b"
    assert resolve_model_id("missing", available) is None


def test_message_content_falls_back_to_reasoning():
    assert message_content({"choices": [{"message": {"content": "", "reasoning": "thought"}}]}) == "thought"
    assert message_content({"choices": []}) == ""
