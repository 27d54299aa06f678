"""Webhook models — endpoint configs, raised events and per-endpoint delivery lineage."""

from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from hookrelay.database import Base
from hookrelay.models import load_json, new_uuid, utcnow


class ConfigStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"  # set by the dispatcher only


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


TERMINAL_DELIVERY_STATUSES = frozenset(
    {DeliveryStatus.SUCCESS.value, DeliveryStatus.FAILED.value, DeliveryStatus.DEAD_LETTER.value}
)


class WebhookConfig(Base):
    """Tenant-registered endpoint that receives signed event notifications."""

    __tablename__ = "webhook_configs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    url = Column(String(2048), nullable=False)
    description = Column(String(500), nullable=True)
    events = Column(Text, default="[]")  # JSON list of subscribed event types
    secret = Column(String(200), nullable=False)  # HMAC signing secret
    status = Column(String(20), default=ConfigStatus.ACTIVE.value, index=True)
    headers = Column(Text, default="{}")  # JSON map of extra static headers
    timeout_ms = Column(Integer, default=10000)
    max_retries = Column(Integer, default=3)
    consecutive_dead_letters = Column(Integer, default=0)
    created_by = Column(String(36), nullable=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    deliveries = relationship(
        "WebhookDelivery",
        back_populates="webhook",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def event_list(self) -> list[str]:
        events = load_json(self.events, [])
        return events if isinstance(events, list) else []

    @property
    def header_map(self) -> dict[str, str]:
        headers = load_json(self.headers, {})
        return headers if isinstance(headers, dict) else {}

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in self.event_list


class WebhookEvent(Base):
    """Immutable record of a raised domain event; shared by all its deliveries."""

    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100), nullable=True)
    entity_id = Column(String(100), nullable=True)
    payload = Column(Text, default="{}")
    metadata_ = Column("metadata", Text, default="{}")
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    deliveries = relationship(
        "WebhookDelivery",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def data(self):
        return load_json(self.payload, {})

    @property
    def meta(self) -> dict:
        meta = load_json(self.metadata_, {})
        return meta if isinstance(meta, dict) else {}


class WebhookDelivery(Base):
    """Delivery lineage of one event to one endpoint; retries mutate this row."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("event_id", "webhook_id", name="uq_webhook_delivery_event_webhook"),
        Index("ix_webhook_deliveries_due", "status", "next_attempt_at"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    webhook_id = Column(
        String(36), ForeignKey("webhook_configs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_id = Column(
        String(36), ForeignKey("webhook_events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status = Column(String(20), default=DeliveryStatus.PENDING.value)
    attempt = Column(Integer, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    leased_until = Column(DateTime(timezone=True), nullable=True)  # claim expiry
    lease_token = Column(String(36), nullable=True)  # current claim holder
    completed_at = Column(DateTime(timezone=True), nullable=True)
    request_url = Column(String(2048), nullable=True)
    request_body = Column(Text, nullable=True)  # exact envelope, resent verbatim
    request_signature = Column(String(100), nullable=True)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    webhook = relationship("WebhookConfig", back_populates="deliveries")
    event = relationship("WebhookEvent", back_populates="deliveries")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DELIVERY_STATUSES
