import os
import tempfile
from typing import AsyncGenerator, Callable, List

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Override settings for testing (must happen before sp_validator is imported)
_TEST_DB_DIR = tempfile.mkdtemp(prefix="sp-validator-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}"
os.environ["APP_ENV"] = "test"
os.environ["API_KEY"] = "test-api-key"
os.environ["ENCRYPTION_MASTER_KEY"] = "test-master-key-with-at-least-32-characters"
os.environ["CLEANUP_ENABLED"] = "false"
os.environ["TEST_FILES_DIR"] = os.path.join(_TEST_DB_DIR, "missing-test-files")

from sp_validator.core.database import db_factory  # noqa: E402
from sp_validator.core.job_manager_provider import configure_job_manager, get_job_manager  # noqa: E402
from sp_validator.core.rate_limit import rate_limiter  # noqa: E402
from sp_validator.main import app  # noqa: E402
from sp_validator.models import Base  # noqa: E402
from sp_validator.services.job_handlers.validation import VALIDATION_QUEUE  # noqa: E402
from sp_validator.services.job_handlers.webhook import WEBHOOK_QUEUE  # noqa: E402
from sp_validator.services.job_manager import JobManager  # noqa: E402
from sp_validator.services.probes.executor import ProbeExecutor  # noqa: E402
from sp_validator.services.webhook_sender import WebhookDeliveryEngine  # noqa: E402

from tests.fakes import FakeCapabilityProvider, SleepRecorder, sequential_names  # noqa: E402

API_HEADERS = {"X-API-Key": "test-api-key"}


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    async with db_factory.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    rate_limiter.buckets.clear()
    yield
    async with db_factory.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    app.dependency_overrides.clear()


@pytest.fixture
def session_factory():
    return db_factory.session_factory


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with db_factory.session_factory() as session:
        yield session


@pytest.fixture
def fake_provider() -> FakeCapabilityProvider:
    return FakeCapabilityProvider()


@pytest.fixture
def executor(fake_provider) -> ProbeExecutor:
    return ProbeExecutor(lambda credentials, subscription_id: fake_provider, name_generator=sequential_names())


@pytest.fixture
def webhook_requests() -> List[httpx.Request]:
    return []


@pytest.fixture
def webhook_responder() -> Callable[[httpx.Request], httpx.Response]:
    """Receiver behaviour; tests replace ``.handler`` to change it."""

    class Responder:
        def __init__(self):
            self.handler = lambda request: httpx.Response(200, json={"received": True})

        def __call__(self, request: httpx.Request) -> httpx.Response:
            return self.handler(request)

    return Responder()


@pytest_asyncio.fixture
async def webhook_client(webhook_requests, webhook_responder) -> AsyncGenerator[httpx.AsyncClient, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return webhook_responder(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def webhook_engine(session_factory, webhook_client, sleep_recorder) -> WebhookDeliveryEngine:
    return WebhookDeliveryEngine(
        session_factory,
        max_retries=3,
        timeout_seconds=5.0,
        backoff_base=1.0,
        backoff_cap=30.0,
        response_body_limit=1000,
        http_client=webhook_client,
        sleep=sleep_recorder,
    )


@pytest_asyncio.fixture
async def job_manager(session_factory, executor, webhook_engine) -> JobManager:
    """Fully wired manager that is drained inline by tests (no background workers)."""
    manager = JobManager(session_factory, poll_interval=0.01)
    await configure_job_manager(manager, executor=executor, engine=webhook_engine)
    # Immediate queue-level retries keep inline draining deterministic
    manager.configure_queue(VALIDATION_QUEUE, backoff_base=0, backoff_cap=0)
    manager.configure_queue(WEBHOOK_QUEUE, backoff_base=0, backoff_cap=0)
    return manager


@pytest_asyncio.fixture
async def async_client(job_manager) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_job_manager() -> JobManager:
        return job_manager

    app.dependency_overrides[get_job_manager] = override_get_job_manager
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def api_headers():
    return dict(API_HEADERS)


@pytest.fixture
def validate_body():
    return {
        "credentials": {
            "tenant_id": "11111111-1111-1111-1111-111111111111",
            "client_id": "22222222-2222-2222-2222-222222222222",
            "client_secret": "super-secret-value",
            "display_name": "ci-deployer",
        },
        "subscription_id": "33333333-3333-3333-3333-333333333333",
        "webhook_url": "https://hooks.example.com/validated",
        "test_config": {"resource_group": "validation-rg", "location": "eastus"},
    }
