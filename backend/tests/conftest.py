"""
Shared fixtures for the adjudication test suite.

Every test gets its own in-memory SQLite database, in-memory collaborators
and a private lock registry, so nothing leaks between tests.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from refund_engine.config import EngineConfig
from refund_engine.database import Base
from refund_engine.models import db_models  # noqa: F401
from refund_engine.models.db_models import (
    DocumentType, LifecycleStage, RefundGround, ReviewerDB, ReviewerRole, TransactionCategory,
)
from refund_engine.services.adjudication import (
    Collaborators, DisbursementScheduler, RequestLockRegistry, SlaMonitor, VerificationPipeline,
)
from refund_engine.services.adjudication.collaborators import StakeholderProfile


# Monday; event dates below sit well inside every limitation window
NOW = datetime(2026, 3, 2, 10, 0, 0)
EVENT_DATE = date(2026, 2, 20)

STAKEHOLDER_ID = "STK-1001"
SOURCE_ACCOUNT = "ACC-SRC-0001"


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine():
    """In-memory SQLite shared across threads (TestClient runs the app in one)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# ENGINE AND COLLABORATORS
# =============================================================================

@pytest.fixture
def config():
    """Fast retries so collaborator failures surface immediately."""
    return EngineConfig(retry_attempts=2, retry_delays=(0.0,), external_call_timeout=2.0)


@pytest.fixture
def stakeholder_profile():
    return StakeholderProfile(
        stakeholder_id=STAKEHOLDER_ID,
        full_name="Asha Verma",
        payout_accounts=[SOURCE_ACCOUNT],
        date_of_birth=date(1985, 6, 14),
        declared_annual_income=Decimal("5000000"),
    )


@pytest.fixture
def collaborators(stakeholder_profile):
    collaborators = Collaborators.in_memory()
    collaborators.registry.add(stakeholder_profile)
    return collaborators


@pytest.fixture
def locks():
    return RequestLockRegistry()


@pytest.fixture
def pipeline(db_session, collaborators, config, locks):
    return VerificationPipeline(db_session, collaborators, config, locks)


@pytest.fixture
def scheduler(db_session, config, locks):
    return DisbursementScheduler(db_session, config, locks)


@pytest.fixture
def monitor(db_session, config, locks):
    return SlaMonitor(db_session, config, locks)


# =============================================================================
# REVIEWERS
# =============================================================================

@pytest.fixture
def reviewers(db_session):
    """One active reviewer per role, keyed by role."""
    created = {}
    for role in ReviewerRole:
        reviewer = ReviewerDB(
            id=str(uuid4()),
            email=f"{role.value.lower()}@refunds.example.com",
            full_name=f"{role.value.title()} Reviewer",
            password_hash="not-used",
            role=role,
            is_active=True,
        )
        db_session.add(reviewer)
        created[role] = reviewer
    db_session.commit()
    return created


# =============================================================================
# REQUEST FACTORY
# =============================================================================

@pytest.fixture
def make_request(pipeline):
    """
    Submit a request and attach the mandatory documents.

    Defaults describe a 50,000 pre-allotment voluntary withdrawal paid
    from the stakeholder's verified account.
    """
    def _make(
        amount="50000",
        category=TransactionCategory.SUBSCRIPTION_PRE_ALLOTMENT,
        stage=LifecycleStage.PRE_ALLOTMENT,
        grounds=(RefundGround.VOLUNTARY_WITHDRAWAL,),
        transaction_id=None,
        payout_account=SOURCE_ACCOUNT,
        event_date=EVENT_DATE,
        documents=(DocumentType.IDENTITY, DocumentType.TRANSACTION_PROOF, DocumentType.BANK_PROOF),
        facts=None,
        now=NOW,
    ):
        request = pipeline.submit(
            stakeholder_id=STAKEHOLDER_ID,
            transaction_id=transaction_id or f"TXN-{uuid4().hex[:10]}",
            category=category,
            lifecycle_stage=stage,
            grounds=list(grounds),
            amount_claimed=Decimal(amount),
            payout_account=payout_account,
            event_date=event_date,
            facts=facts,
            now=now,
        )
        for document_type in documents:
            pipeline.attach_evidence(
                request.reference_id, STAKEHOLDER_ID, document_type,
                f"{document_type.value} for {request.reference_id}".encode("utf-8"),
                filename=f"{document_type.value.lower()}.pdf", now=now,
            )
        return request.reference_id

    return _make
