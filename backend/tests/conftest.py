"""
Test Configuration - Fixtures for the SQLite test database, API client and records.

Every test gets a fresh in-memory schema. StaticPool keeps the single
connection alive so the API thread and the test see the same database.
"""
import os

# Must be set before productguard.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_SECRET"] = "test-scheduler-secret"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"

from datetime import datetime, timedelta
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from productguard.auth import create_access_token
from productguard.config import PipelineConfig
from productguard.database import Base, get_db
from productguard.main import app
from productguard.models.db_models import (
    ProductDB, ScanDB, InfringementDB, TakedownDB, QueueItemDB,
    InfringementStatus, RiskLevel, TakedownStatus, TargetType, DeliveryMethod, QueueStatus,
)
from productguard.services.rate_limit import RateLimiter
from productguard.services.scan_history.url_utils import normalize_url, hash_url

USER_ID = "user-0001"
OTHER_USER_ID = "user-0002"
ADMIN_ID = "admin-0001"


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory database with the full schema."""
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
def db(engine):
    """Session bound to the test database."""
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def config():
    """Pipeline config with no pauses between sends."""
    return PipelineConfig(send_interval_seconds=0)


# =============================================================================
# API CLIENT
# =============================================================================

@pytest.fixture
def mailer():
    """Mail collaborator that succeeds unless told otherwise."""
    mock = MagicMock()
    mock.send.return_value = "msg-123"
    return mock


@pytest.fixture
def client(db, config, mailer):
    """TestClient sharing the test session and collaborators."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    saved = {
        key: getattr(app.state, key, None)
        for key in ("pipeline_config", "mailer", "rate_limiter", "classifier", "profiler")
    }
    app.state.pipeline_config = config
    app.state.mailer = mailer
    app.state.rate_limiter = RateLimiter(max_calls=1, window_seconds=300)
    app.state.classifier = None
    app.state.profiler = None

    yield TestClient(app)

    app.dependency_overrides.clear()
    for key, value in saved.items():
        setattr(app.state, key, value)


def auth_headers(user_id: str = USER_ID, role: str = "user") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}


# =============================================================================
# RECORD FACTORIES
# =============================================================================

def make_product(db, user_id=USER_ID, product_type="course", name="Course"):
    product = ProductDB(id=str(uuid4()), user_id=user_id, name=name, product_type=product_type)
    db.add(product)
    db.commit()
    return product


def make_scan(db, product):
    scan = ScanDB(id=str(uuid4()), product_id=product.id, user_id=product.user_id, run_count=0)
    db.add(scan)
    db.commit()
    return scan


def make_infringement(
    db,
    product,
    url=None,
    status=InfringementStatus.ACTIVE,
    query_category=None,
    infrastructure=None,
    created_at=None,
    scan=None,
):
    url = url or f"https://piracy.example/{uuid4().hex[:8]}"
    infringement = InfringementDB(
        id=str(uuid4()),
        product_id=product.id,
        user_id=product.user_id,
        scan_id=scan.id if scan else None,
        source_url=url,
        url_normalized=normalize_url(url),
        url_hash=hash_url(url),
        query_category=query_category,
        risk_level=RiskLevel.MEDIUM,
        severity_score=50,
        status=status,
        seen_count=1,
        infrastructure=infrastructure,
        created_at=created_at or datetime.utcnow(),
    )
    db.add(infringement)
    db.commit()
    return infringement


def make_takedown(
    db,
    infringement,
    target_type=TargetType.PLATFORM,
    sent_days_ago=0,
    status=TakedownStatus.SENT,
    provider_name="Platform Inc",
    queue_item_id=None,
):
    sent_at = datetime.utcnow() - timedelta(days=sent_days_ago)
    takedown = TakedownDB(
        id=str(uuid4()),
        infringement_id=infringement.id,
        user_id=infringement.user_id,
        queue_item_id=queue_item_id,
        target_type=target_type,
        provider_name=provider_name,
        recipient="dmca@platform.example",
        delivery_method=DeliveryMethod.EMAIL,
        escalation_step=1,
        notice_content="Original notice body",
        status=status,
        submitted_at=sent_at,
        sent_at=sent_at,
    )
    db.add(takedown)
    db.commit()
    return takedown


def make_queue_item(
    db,
    infringement,
    status=QueueStatus.PENDING,
    delivery_method=DeliveryMethod.EMAIL,
    recipient_email="dmca@host.example",
    scheduled_for=None,
    batch_id=None,
    attempt_count=0,
    max_attempts=3,
    processing_started_at=None,
    target_type=TargetType.PLATFORM,
):
    item = QueueItemDB(
        id=str(uuid4()),
        batch_id=batch_id or str(uuid4()),
        user_id=infringement.user_id,
        infringement_id=infringement.id,
        provider_name="Host Co",
        target_type=target_type,
        delivery_method=delivery_method,
        recipient_email=recipient_email,
        form_url="https://host.example/dmca" if delivery_method != DeliveryMethod.EMAIL else None,
        notice_subject="DMCA Takedown Notice",
        notice_body="Please remove the infringing content.",
        status=status,
        attempt_count=attempt_count,
        max_attempts=max_attempts,
        scheduled_for=scheduled_for or (datetime.utcnow() - timedelta(minutes=1)),
        processing_started_at=processing_started_at,
    )
    db.add(item)
    db.commit()
    return item
