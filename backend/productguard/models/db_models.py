"""
ProductGuard Enforcement Engine - SQLAlchemy ORM Models
PostgreSQL database models for the enforcement pipeline
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from ..database import Base


def _enum_column(enum_cls):
    """Store enum values (not member names) as plain strings."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# ENUMS
# =============================================================================

class ActorType(str, Enum):
    """Who triggered a change - recorded on every audit row."""
    USER = "user"
    SYSTEM = "system"
    CRON = "cron"


class InfringementStatus(str, Enum):
    """States in the infringement lifecycle."""
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    REJECTED = "rejected"
    TAKEDOWN_SENT = "takedown_sent"
    REMOVED = "removed"


class InfringementEvent(str, Enum):
    """Events that drive infringement status transitions."""
    VERIFY = "verify"
    REJECT = "reject"
    TAKEDOWN_SENT = "takedown_sent"
    RESOLVE = "resolve"
    REOPEN = "reopen"
    RELIST_DETECTED = "relist_detected"


class RiskLevel(str, Enum):
    """Risk tier of an infringement. Ordered low < medium < high < critical."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return RISK_LEVEL_ORDER[self]


RISK_LEVEL_ORDER = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class TargetType(str, Enum):
    """Enforcement target tiers, in escalation order."""
    PLATFORM = "platform"
    HOSTING = "hosting"
    REGISTRAR = "registrar"
    SEARCH_ENGINE = "search_engine"


class DeliveryMethod(str, Enum):
    """How a takedown notice reaches its target."""
    EMAIL = "email"
    WEB_FORM = "web_form"
    MANUAL = "manual"


class QueueStatus(str, Enum):
    """States of a DMCA send queue item."""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    AWAITING_MANUAL = "awaiting_manual"
    FAILED = "failed"
    SKIPPED = "skipped"


class TakedownStatus(str, Enum):
    """States of a takedown (the legal record of a notice)."""
    DRAFT = "draft"
    SENT = "sent"
    RESOLVED = "resolved"
    FAILED = "failed"


class VerificationVerdict(str, Enum):
    """Human verification outcome."""
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class CostEventType(str, Enum):
    """Billable usage events."""
    SCAN_AI_FILTER = "scan_ai_filter"
    SCAN_WHOIS = "scan_whois"
    EMAIL_SEND = "email_send"


# =============================================================================
# PRODUCTS / SCANS
# =============================================================================

class ProductDB(Base):
    """A protected product owned by a tenant."""
    __tablename__ = "products"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)  # Owning tenant
    name = Column(String(255), nullable=False)
    product_type = Column(String(50), nullable=True)  # course, ebook, software, template...

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    scans = relationship("ScanDB", back_populates="product")


class ScanDB(Base):
    """
    A living scan - one per product, re-run on a schedule.
    Each execution appends a ScanRunDB row.
    """
    __tablename__ = "scans"

    id = Column(String(36), primary_key=True)  # UUID
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)

    run_count = Column(Integer, default=0)
    initial_run_at = Column(DateTime, nullable=True)
    last_run_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    product = relationship("ProductDB", back_populates="scans")


class ScanRunDB(Base):
    """
    Immutable record of one scan execution.
    Append-only - never updated after insert.
    """
    __tablename__ = "scan_history"
    __table_args__ = (
        UniqueConstraint("scan_id", "run_number", name="uq_scan_history_run_number"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    scan_id = Column(String(36), ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)
    run_number = Column(Integer, nullable=False)
    run_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    # Metrics for this run
    duration_seconds = Column(Integer, nullable=True)
    total_urls_scanned = Column(Integer, default=0)
    new_urls_found = Column(Integer, default=0)
    new_infringements_created = Column(Integer, default=0)

    # Resource savings from delta detection
    api_calls_saved = Column(Integer, default=0)      # WHOIS / infrastructure lookups skipped
    ai_filtering_saved = Column(Integer, default=0)   # AI classifications skipped

    platforms_searched = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# INFRINGEMENTS
# =============================================================================

class InfringementDB(Base):
    """
    A detected copy of a product at a URL.
    Deduplicated on (product_id, url_hash).
    """
    __tablename__ = "infringements"
    __table_args__ = (
        UniqueConstraint("product_id", "url_hash", name="uq_infringements_product_url"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    scan_id = Column(String(36), ForeignKey("scans.id", ondelete="SET NULL"), nullable=True, index=True)

    # Location
    source_url = Column(Text, nullable=False)
    url_normalized = Column(Text, nullable=False)
    url_hash = Column(String(64), nullable=False)
    platform = Column(String(100), nullable=True)

    # Detection strategy that found it
    query_category = Column(String(100), nullable=True, index=True)
    query_tier = Column(Integer, nullable=True)

    # Scoring
    risk_level = Column(_enum_column(RiskLevel), default=RiskLevel.MEDIUM)
    severity_score = Column(Integer, default=0)  # 0-100
    est_revenue_loss = Column(Float, nullable=True)

    # State machine
    status = Column(_enum_column(InfringementStatus), default=InfringementStatus.PENDING_VERIFICATION, nullable=False, index=True)
    previous_status = Column(_enum_column(InfringementStatus), nullable=True)
    status_changed_at = Column(DateTime, nullable=True)

    # Delta detection
    first_seen_at = Column(DateTime, default=datetime.utcnow)
    last_seen_at = Column(DateTime, default=datetime.utcnow)
    seen_count = Column(Integer, default=1)

    # Infrastructure profile: hosting_provider, registrar, abuse contacts, country...
    infrastructure = Column(JSON, nullable=True)

    # Verification
    verified_by_user_at = Column(DateTime, nullable=True)
    verified_by_user_id = Column(String(36), nullable=True)
    review_flagged_at = Column(DateTime, nullable=True)  # Set when pending review goes stale

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transitions = relationship("StatusTransitionDB", back_populates="infringement")


class StatusTransitionDB(Base):
    """
    Immutable audit log of infringement changes.
    Status transitions and product reassignments both land here.
    """
    __tablename__ = "status_transitions"

    id = Column(String(36), primary_key=True)  # UUID
    infringement_id = Column(String(36), ForeignKey("infringements.id", ondelete="CASCADE"), nullable=False, index=True)

    event_type = Column(String(50), nullable=False)  # status_transition, product_reassigned
    from_status = Column(String(50), nullable=True)
    to_status = Column(String(50), nullable=True)
    reason = Column(Text, nullable=True)

    actor = Column(_enum_column(ActorType), nullable=False)
    actor_id = Column(String(36), nullable=True)

    # Renamed from 'metadata' which is reserved in SQLAlchemy
    transition_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    infringement = relationship("InfringementDB", back_populates="transitions")


class VerificationFeedbackDB(Base):
    """
    Append-only record of human verification decisions.
    Learning input for category precision; purged first on product deletion.
    """
    __tablename__ = "verification_feedback"

    id = Column(String(36), primary_key=True)  # UUID
    infringement_id = Column(String(36), ForeignKey("infringements.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)

    query_category = Column(String(100), nullable=True)
    verdict = Column(_enum_column(VerificationVerdict), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# TAKEDOWNS / SEND QUEUE
# =============================================================================

class TakedownDB(Base):
    """
    Legal record of one enforcement notice against one infringement.
    """
    __tablename__ = "takedowns"

    id = Column(String(36), primary_key=True)  # UUID
    infringement_id = Column(String(36), ForeignKey("infringements.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)

    # One takedown per delivered queue item
    queue_item_id = Column(String(36), nullable=True, unique=True)

    # Target
    target_type = Column(_enum_column(TargetType), nullable=False, default=TargetType.PLATFORM)
    provider_name = Column(String(255), nullable=True)
    recipient = Column(String(500), nullable=True)  # Email address or form URL
    delivery_method = Column(_enum_column(DeliveryMethod), nullable=False, default=DeliveryMethod.EMAIL)
    escalation_step = Column(Integer, default=1)

    # Notice
    notice_content = Column(Text, nullable=True)
    infringing_url = Column(Text, nullable=True)

    # Status
    status = Column(_enum_column(TakedownStatus), nullable=False, default=TakedownStatus.DRAFT, index=True)
    provider_message_id = Column(String(255), nullable=True)

    # Timestamps
    submitted_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    overdue_at = Column(DateTime, nullable=True)  # First time the response window lapsed

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class QueueItemDB(Base):
    """
    One notice waiting to be delivered to one target.
    Items created together share a batch_id.
    """
    __tablename__ = "dmca_send_queue"
    __table_args__ = (
        Index("idx_dmca_queue_pending", "status", "scheduled_for"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    batch_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    infringement_id = Column(String(36), ForeignKey("infringements.id", ondelete="CASCADE"), nullable=False, index=True)

    # Where to send
    provider_name = Column(String(255), nullable=False)
    target_type = Column(_enum_column(TargetType), nullable=False)
    delivery_method = Column(_enum_column(DeliveryMethod), nullable=False, default=DeliveryMethod.EMAIL)
    recipient_email = Column(String(255), nullable=True)
    recipient_name = Column(String(255), nullable=True)
    form_url = Column(Text, nullable=True)
    escalation_step = Column(Integer, default=1)

    # Notice content (pre-generated)
    notice_subject = Column(String(500), nullable=False)
    notice_body = Column(Text, nullable=False)

    # Processing state
    status = Column(_enum_column(QueueStatus), nullable=False, default=QueueStatus.PENDING)
    priority = Column(Integer, nullable=False, default=0)  # Position in the resolved target order
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    # Results
    takedown_id = Column(String(36), ForeignKey("takedowns.id", ondelete="SET NULL"), nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)

    # Scheduling
    scheduled_for = Column(DateTime, nullable=False, default=datetime.utcnow)
    processing_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# USAGE COSTS
# =============================================================================

class UsageCostEventDB(Base):
    """Per-tenant billable usage events written by UsageCostRecorder.flush()."""
    __tablename__ = "usage_cost_events"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    product_id = Column(String(36), nullable=True, index=True)

    event_type = Column(_enum_column(CostEventType), nullable=False)
    units = Column(Integer, nullable=False, default=0)
    unit_cost = Column(Float, nullable=False, default=0.0)
    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
