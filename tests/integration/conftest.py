"""
Pytest configuration for integration tests.

Runs the webhook app in-process (httpx ASGITransport) against a SQLite
database; Redis is not needed with same-process ingest.
"""

import os

from cryptography.fernet import Fernet

TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()

# Set environment variables for tests
os.environ["CREDENTIAL_ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["PUBLIC_BASE_URL"] = "https://sms.example.org"
os.environ["JOBS_SAME_PROCESS"] = "true"
os.environ["LOG_JSON"] = "false"

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from basecore.crypto import CredentialVault, get_vault  # noqa: E402
from basecore.db import get_db  # noqa: E402
from basecore.settings import get_settings  # noqa: E402

from messaging_sms.persistence.models import (  # noqa: E402
    Assignment,
    Campaign,
    CampaignContact,
    Message,
    MessagingBase,
    MessagingService,
    SendStatus,
)

get_settings.cache_clear()
get_vault.cache_clear()

from sms_webhook.main import app, get_producer, get_service_cache  # noqa: E402

TWILIO_SID = "MG00000000000000000000000000000009"
TWILIO_AUTH_TOKEN = "integration-auth-token"
CONTACT_CELL = "+15555550100"
USER_NUMBER = "+15555550199"


@pytest.fixture
async def sessionmaker(tmp_path):
    """Sessionmaker on a fresh SQLite database with the messaging tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'webhook.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(MessagingBase.metadata.create_all)

    yield async_sessionmaker(engine, autoflush=False, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def outbound_message(sessionmaker):
    """A Twilio service and one sent outbound message to the contact."""
    async with sessionmaker() as db:
        db.add_all([
            Campaign(id=1, organization_id=1, title="GOTV", is_archived=False),
            Assignment(id=1, campaign_id=1, user_id=7),
            CampaignContact(id=1, campaign_id=1, assignment_id=1, cell=CONTACT_CELL),
            MessagingService(
                messaging_service_sid=TWILIO_SID,
                organization_id=1,
                service_type="twilio",
                account_sid="AC00000000000000000000000000000009",
                encrypted_auth_token=CredentialVault(TEST_ENCRYPTION_KEY).encrypt(TWILIO_AUTH_TOKEN),
                is_active=True,
            ),
        ])
        await db.flush()
        message = Message(
            campaign_contact_id=1,
            assignment_id=1,
            contact_number=CONTACT_CELL,
            user_number=USER_NUMBER,
            text="Can we count on your vote?",
            service="twilio",
            service_id="SM_OUT_1",
            send_status=SendStatus.SENT.value,
        )
        db.add(message)
        await db.commit()
        return message


@pytest.fixture
async def client(sessionmaker):
    """HTTP client for the webhook app with the test database wired in."""

    async def _get_db():
        async with sessionmaker() as db:
            yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_service_cache] = lambda: None
    app.dependency_overrides[get_producer] = lambda: None

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()
