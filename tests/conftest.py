from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from counsel_intake.config import AnalysisConfig, AppSettings, EndpointConfig, RetryConfig
from counsel_intake.main import create_app
from counsel_intake.schemas import JurisdictionConfig, TeamConfig, TeamFeatures
from tests.fakes import FakeLawyerSearchClient, FakeLMStudioClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://lm.test/v1")
    settings = AppSettings(
        lm_studio_base_url=base_url,
        agent_endpoint=EndpointConfig(base_url=base_url, model_id="test-model"),
        summarizer_endpoint=EndpointConfig(base_url=base_url, model_id="test-model"),
        vision_endpoint=EndpointConfig(base_url=base_url, model_id="test-vision"),
        database_path=str(tmp_path / "test.db"),
        upload_dir=str(tmp_path / "uploads"),
        host="127.0.0.1",
        port=8000,
        retry=RetryConfig(attempts=3, base_delay_ms=0, max_delay_ms=0, jitter_ms=0),
        analysis=AnalysisConfig(concurrency=1, retry_delay_s=0.0),
        default_team_id="public",
        public_team_slugs=["public"],
        teams={
            "public": TeamConfig(id="public", slug="public", name="Public Help", available_services=["General Consultation"]),
            "firm": TeamConfig(
                id="firm",
                slug="smith-law",
                name="Smith Law",
                available_services=["Family Law", "Employment Law"],
                jurisdiction=JurisdictionConfig(supported_states=["North Carolina"]),
            ),
            "paralegal": TeamConfig(
                id="paralegal",
                slug="paralegal-firm",
                name="Paralegal Firm",
                available_services=["General Consultation"],
                features=TeamFeatures(enable_paralegal_agent=True, paralegal_first=True),
            ),
        },
        lawyer_search_api_key=None,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_lm: FakeLMStudioClient | None = None,
        fake_lawyers: FakeLawyerSearchClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        lm_client = fake_lm or FakeLMStudioClient()
        lawyer_client = fake_lawyers or FakeLawyerSearchClient()
        app = create_app(settings, lm_client=lm_client, lawyer_client=lawyer_client)
        return app, lm_client, lawyer_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, lm_client, lawyer_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_lm = lm_client  # type: ignore[attr-defined]
            http_client.fake_lawyers = lawyer_client  # type: ignore[attr-defined]
            yield http_client
