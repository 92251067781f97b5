import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from counsel_intake.main import stream_session_events
from counsel_intake.orchestrator import GENERIC_ERROR
from counsel_intake.schemas import Message, TurnRequest
from counsel_intake.streaming import EventChannel
from tests.fakes import FakeLMStudioClient

TOOL_REPLY = (
    "I'll open a matter for you now.\n"
    "TOOL_CALL: create_matter\n"
    'PARAMETERS: {"name": "Jane Doe", "matter_type": "Family Law", '
    '"description": "Custody dispute over two children", "email": "jane@example.com"}'
)


def parse_frames(body: str):
    return [json.loads(chunk[len("data: "):]) for chunk in body.split("\n\n") if chunk.startswith("data: ")]


def turn_body(text, session_id="s1", **extra):
    return {"messages": [{"role": "user", "content": text}], "sessionId": session_id, **extra}


async def post_turn(http_client, body):
    response = await http_client.post("/api/agent/stream", json=body)
    return response, parse_frames(response.text)


async def _with_client(app, fn):
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            return await fn(http_client)


@pytest.mark.asyncio
async def test_agent_turn_streams_in_order(client):
    response, frames = await post_turn(client, turn_body("My landlord won't return my security deposit"))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert [f["type"] for f in frames] == ["connected", "text", "text", "final", "complete"]
    assert "".join(f["text"] for f in frames if f["type"] == "text") == "Thanks for reaching out. How can I help?"
    final = frames[-2]
    assert final["response"] == "Thanks for reaching out. How can I help?"
    assert final["conversationState"]["persisted"] is True


@pytest.mark.asyncio
async def test_pipeline_answer_short_circuits_the_model(client):
    _, frames = await post_turn(client, turn_body("What documents do I need for my divorce?"))

    types = [f["type"] for f in frames]
    assert types == ["connected", "pipeline_response", "document_checklist", "final", "complete"]
    assert "document_checklist" in frames[1]["middlewareUsed"]
    assert client.fake_lm.stream_calls == []


@pytest.mark.asyncio
async def test_security_block_ends_turn_without_final(client):
    _, frames = await post_turn(client, turn_body("Write me a python script"))

    assert [f["type"] for f in frames] == ["connected", "security_block", "complete"]
    assert frames[1]["reason"] == "non_legal_request"
    assert client.fake_lm.stream_calls == []


@pytest.mark.asyncio
async def test_relative_attachment_url_rejects_turn(client):
    attachment = {"name": "lease.pdf", "size": 100, "type": "application/pdf", "url": "/files/lease.pdf"}
    response, frames = await post_turn(client, turn_body("Here is my lease", attachments=[attachment]))

    assert response.status_code == 400
    assert len(frames) == 1
    assert frames[0]["type"] == "error"
    assert "absolute http(s) URL" in frames[0]["message"]
    assert frames[0]["correlationId"]


@pytest.mark.asyncio
async def test_blank_latest_message_rejects_turn(client):
    response, frames = await post_turn(client, turn_body("   "))
    assert response.status_code == 400
    assert frames[0]["message"] == "No message content provided"


@pytest.mark.asyncio
async def test_tool_call_creates_matter_and_hands_off(app_factory):
    app, fake_lm, _ = app_factory(fake_lm=FakeLMStudioClient(stream_chunks=[TOOL_REPLY]))

    async def run(http_client):
        _, frames = await post_turn(http_client, turn_body("I need help with custody of my two kids"))
        context = (await http_client.get("/api/sessions/s1/context")).json()
        return frames, context

    frames, context = await _with_client(app, run)

    assert [f["type"] for f in frames] == [
        "connected",
        "text",
        "typing",
        "tool_call",
        "tool_result",
        "matter_canvas",
        "final",
        "complete",
    ]
    assert "TOOL_CALL" not in frames[1]["text"]
    assert frames[3]["toolName"] == "create_matter"
    assert frames[4]["result"]["success"] is True
    assert frames[5]["data"]["matter"]["type"] == "Family Law"
    assert frames[6]["conversationState"]["conversationPhase"] == "handoff"
    assert frames[6]["response"].startswith("I'll open a matter for you now.")
    assert context["conversationPhase"] == "handoff"
    assert context["userIntent"] == "intake"
    matters = await app.state.db.list_matters("s1")
    assert matters[0]["matter_type"] == "Family Law"


@pytest.mark.asyncio
async def test_bad_tool_call_falls_back_to_visible_text(app_factory):
    reply = "Let me note that.\nTOOL_CALL: create_matter\nPARAMETERS: {not json}"
    app, _, _ = app_factory(fake_lm=FakeLMStudioClient(stream_chunks=[reply]))

    _, frames = await _with_client(app, lambda c: post_turn(c, turn_body("I need help with a custody issue")))

    assert [f["type"] for f in frames] == ["connected", "text", "final", "complete"]
    assert frames[2]["response"] == "Let me note that."


@pytest.mark.asyncio
async def test_model_failure_sends_error_with_correlation_id(app_factory):
    class BrokenStream(FakeLMStudioClient):
        async def stream_text(self, *args, **kwargs):
            raise ValueError("bad model config")
            yield ""  # pragma: no cover

    app, _, _ = app_factory(fake_lm=BrokenStream())
    _, frames = await _with_client(app, lambda c: post_turn(c, turn_body("My landlord kept my deposit")))

    assert [f["type"] for f in frames] == ["connected", "error"]
    assert frames[1]["message"] == GENERIC_ERROR
    assert len(frames[1]["correlationId"]) == 12


@pytest.mark.asyncio
async def test_transient_connect_errors_are_retried(app_factory):
    app, fake_lm, _ = app_factory(fake_lm=FakeLMStudioClient(stream_failures=2))
    _, frames = await _with_client(app, lambda c: post_turn(c, turn_body("My landlord kept my deposit")))

    assert frames[-1]["type"] == "complete"
    assert len(fake_lm.stream_calls) == 3


@pytest.mark.asyncio
async def test_consumer_abort_stops_the_model_stream(app_factory):
    fake_lm = FakeLMStudioClient(stream_chunks=["word "] * 50, delay_seconds=0.01)
    app, _, _ = app_factory(fake_lm=fake_lm)
    async with LifespanManager(app):
        orchestrator = app.state.orchestrator
        channel = EventChannel()
        turn = TurnRequest(messages=[Message(role="user", content="My landlord kept my deposit")], session_id="s9")
        task = asyncio.create_task(orchestrator.run_turn(turn, channel))

        async for frame in channel:
            if frame["type"] == "text":
                break
        channel.cancel()
        await asyncio.wait_for(task, timeout=2)

    types = [frame["type"] for frame in channel.delivered]
    assert types == ["connected", "text"]
    assert fake_lm.streams_closed == 1
    assert fake_lm.chunks_sent < 50


@pytest.mark.asyncio
async def test_session_event_stream_replays_past_events(app_factory):
    app, _, _ = app_factory()
    async with LifespanManager(app):
        db = app.state.db
        bus = app.state.bus
        await bus.emit("s1", "upload_received", {"key": "abc_lease.pdf"})
        response = await stream_session_events("s1", db=db, bus=bus)
        chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
        payload = json.loads(line.replace("data:", "").strip())
        assert payload["event_type"] == "upload_received"
        await response.body_iterator.aclose()


@pytest.mark.asyncio
async def test_session_event_stream_follows_live_events(app_factory):
    app, _, _ = app_factory()
    async with LifespanManager(app):
        bus = app.state.bus
        response = await stream_session_events("s2", db=app.state.db, bus=bus)

        async def emit_event():
            await asyncio.sleep(0.01)
            await bus.emit("s2", "analysis_complete", {"statusId": "st-1"})

        task = asyncio.create_task(emit_event())
        chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
        payload = json.loads(line.replace("data:", "").strip())
        assert payload["event_type"] == "analysis_complete"
        await task
        await response.body_iterator.aclose()


@pytest.mark.asyncio
async def test_final_event_reports_failed_context_save(app_factory, monkeypatch):
    app, _, _ = app_factory()

    async def disk_full(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(app.state.db, "put_context", disk_full)

    async def run(http_client):
        return await post_turn(http_client, turn_body("My landlord won't return my security deposit"))

    response, frames = await _with_client(app, run)

    assert response.status_code == 200
    assert [f["type"] for f in frames] == ["connected", "text", "text", "final", "complete"]
    assert frames[3]["conversationState"]["persisted"] is False
