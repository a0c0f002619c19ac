"""
Pytest fixtures for SMS messaging tests.

DB-backed tests run against a SQLite file per test (aiosqlite). Every
transaction starts with BEGIN IMMEDIATE so concurrent sessions serialize
on writes the way row locks do on PostgreSQL.
"""

from dataclasses import dataclass

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from basecore.crypto import CredentialVault
from basecore.settings import Settings

from messaging_sms.persistence.models import (
    Assignment,
    Campaign,
    CampaignContact,
    Message,
    MessagingBase,
    MessagingService,
    SendStatus,
)

TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()

TWILIO_SID = "MG00000000000000000000000000000001"
TWILIO_ACCOUNT_SID = "AC00000000000000000000000000000001"
TWILIO_AUTH_TOKEN = "twilio-auth-token"

CONTACT_CELL = "+15555550100"
USER_NUMBER = "+15555550199"


@dataclass
class Seed:
    organization_id: int
    campaign_id: int
    assignment_id: int
    campaign_contact_id: int
    cell: str
    messaging_service_sid: str


@pytest.fixture
def settings():
    """Settings for tests (no .env, no simulated replies)."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite://",
        CREDENTIAL_ENCRYPTION_KEY=TEST_ENCRYPTION_KEY,
        PUBLIC_BASE_URL="https://sms.example.org",
        PROVIDER_TIMEOUT_SECONDS=5.0,
        FAKE_REPLY_RATIO=0.0,
        JOBS_SAME_PROCESS=True,
        LOG_JSON=False,
    )


@pytest.fixture
def vault():
    """Credential vault with the test key."""
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
async def engine(tmp_path):
    """SQLite engine with the messaging tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sms.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(MessagingBase.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return async_sessionmaker(engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
async def db(sessionmaker):
    """A database session."""
    async with sessionmaker() as session:
        yield session


@pytest.fixture
async def seed(db, vault):
    """One organization with a live campaign, one contact and a Twilio service."""
    campaign = Campaign(id=1, organization_id=1, title="GOTV", is_archived=False)
    assignment = Assignment(id=1, campaign_id=1, user_id=7)
    contact = CampaignContact(
        id=1,
        campaign_id=1,
        assignment_id=1,
        cell=CONTACT_CELL,
        zip="02139",
        is_opted_out=False,
    )
    service = MessagingService(
        messaging_service_sid=TWILIO_SID,
        organization_id=1,
        service_type="twilio",
        account_sid=TWILIO_ACCOUNT_SID,
        encrypted_auth_token=vault.encrypt(TWILIO_AUTH_TOKEN),
        is_active=True,
    )
    db.add_all([campaign, assignment, contact, service])
    await db.commit()

    return Seed(
        organization_id=1,
        campaign_id=1,
        assignment_id=1,
        campaign_contact_id=1,
        cell=CONTACT_CELL,
        messaging_service_sid=TWILIO_SID,
    )


@pytest.fixture
def make_message(db):
    """Factory for outbound message rows."""

    async def _make_message(
        text: str = "Hi, can we count on your vote?",
        send_status: SendStatus = SendStatus.QUEUED,
        service: str = "",
        service_id: str | None = None,
        campaign_contact_id: int = 1,
        contact_number: str = CONTACT_CELL,
    ) -> Message:
        message = Message(
            campaign_contact_id=campaign_contact_id,
            assignment_id=1,
            user_id=7,
            contact_number=contact_number,
            user_number=USER_NUMBER,
            is_from_contact=False,
            text=text,
            send_status=send_status.value,
            service=service,
            service_id=service_id,
            service_response="",
        )
        db.add(message)
        await db.commit()
        return message

    return _make_message
