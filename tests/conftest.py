import asyncio
import json
import os
import sys

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from topup.router import deps
from topup.services.zenospay_client import ZenospayClient
from topup.utils import db as db_core
from topup.utils.config import ZenospayConfig, settings
from topup.utils.signing import build_string_to_sign, canonical_json, sign
from topup.models.transaction import Transaction  # noqa: F401

if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

WEBHOOK_PATH = "/api/transactions/webhook/zenospay"
CREATE_QRIS_PATH = "/api/create/qris"
ADMIN_TOKEN = "test-admin-token"


@pytest.fixture(scope="session")
def merchant_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def notifier_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def zenospay_config(merchant_key, notifier_key) -> ZenospayConfig:
    return ZenospayConfig(
        base_url="https://zenospay.test",
        create_qris_path=CREATE_QRIS_PATH,
        partner_id="partner-123",
        private_key=merchant_key,
        public_key=notifier_key.public_key(),
        webhook_endpoint=WEBHOOK_PATH,
        webhook_disable_verify=False,
        timeout_seconds=5.0,
    )


class FakeZenospay:
    """Records outbound QRIS requests and answers with a configurable response."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.response_body = {
            "status": "success",
            "data": {
                "qr_content": "00020101021226670016ID.CO.QRIS.WWW",
                "qr_url": "https://zenospay.test/qr/abc.png",
                "transaction_id": "ZP-0001",
            },
        }
        self.error: Exception | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.response_body)

    @property
    def last_payload(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def fake_zenospay() -> FakeZenospay:
    return FakeZenospay()


@pytest.fixture
def zenospay_client(zenospay_config, fake_zenospay) -> ZenospayClient:
    return ZenospayClient(zenospay_config, httpx.AsyncClient(transport=httpx.MockTransport(fake_zenospay.handler)))


@pytest.fixture
def fulfillments() -> list:
    return []


@pytest.fixture
def signed_webhook(notifier_key):
    """Build ``(headers, content)`` for a webhook as the provider would send it."""

    def _build(body: dict, *, timestamp: str = "1760000000", path: str = WEBHOOK_PATH, key=None):
        signature = sign(build_string_to_sign("POST", path, body, timestamp), key or notifier_key)
        headers = {"Content-Type": "application/json", "X-TIMESTAMP": timestamp, "X-SIGNATURE": signature}
        return headers, canonical_json(body).encode("utf-8")

    return _build


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    database_url = os.getenv(
        "TEST_DATABASE_URL",
        f"sqlite+aiosqlite:///{tmp_path_factory.mktemp('db') / 'topup.db'}",
    )
    # NullPool avoids reusing connections across the event loops tests create.
    engine = create_async_engine(database_url, poolclass=NullPool)
    db_core.engine = engine
    db_core.SessionLocal = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    settings.database_url = database_url
    return engine


@pytest.fixture(autouse=True)
def setup_database(test_engine):
    async def _setup() -> None:
        async with test_engine.begin() as conn:
            await conn.run_sync(db_core.Base.metadata.drop_all)
            await conn.run_sync(db_core.Base.metadata.create_all)

    async def _teardown() -> None:
        async with test_engine.begin() as conn:
            await conn.run_sync(db_core.Base.metadata.drop_all)

    asyncio.run(_setup())
    yield
    asyncio.run(_teardown())
    asyncio.run(test_engine.dispose())


@pytest.fixture
def client(zenospay_config, zenospay_client, fulfillments):
    settings.db_auto_create = False
    settings.admin_api_token = ADMIN_TOKEN
    from topup.main import app

    async def _record_fulfillment(transaction) -> None:
        fulfillments.append(transaction.id)

    app.dependency_overrides[deps.get_zenospay_config] = lambda: zenospay_config
    app.dependency_overrides[deps.get_provider] = lambda: zenospay_client
    app.dependency_overrides[deps.get_success_hook] = lambda: _record_fulfillment
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def create_transaction(client):
    def _create(**overrides) -> dict:
        payload = {"total_diamond": 100, "total_amount": 15000, "no_wa": "081234567890", "target_id": 42}
        payload.update(overrides)
        response = client.post("/api/transactions", json=payload)
        assert response.status_code == 201, response.text
        return response.json()

    return _create
