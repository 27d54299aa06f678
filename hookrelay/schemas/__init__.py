"""Pydantic schemas for API request/response."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from hookrelay.config import get_settings
from hookrelay.models import load_json
from hookrelay.services.event_catalog import is_known_event_type
from hookrelay.services.target_urls import validate_target_url
from hookrelay.services.webhook_dispatcher import RESERVED_HEADERS

MASKED_SECRET = "••••••••"

MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 30000
MAX_RETRIES_LIMIT = 5


def _check_url(url: str) -> str:
    return validate_target_url(url, allow_private=get_settings().webhook_allow_private_targets)


def _check_events(events: list[str]) -> list[str]:
    if not events:
        raise ValueError("At least one event type is required")
    unknown = [e for e in events if not is_known_event_type(e)]
    if unknown:
        raise ValueError(f"Invalid event type: {', '.join(unknown)}")
    # Preserve order, drop duplicates
    return list(dict.fromkeys(events))


def _check_headers(headers: dict[str, str]) -> dict[str, str]:
    reserved = [name for name in headers if name.lower() in RESERVED_HEADERS]
    if reserved:
        raise ValueError(f"Reserved header cannot be overridden: {', '.join(reserved)}")
    return headers


# ── Auth ─────────────────────────────────────────────────
class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


# ── Webhook Config ───────────────────────────────────────
class WebhookConfigCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    url: str
    description: Optional[str] = Field(None, max_length=500)
    events: list[str]
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_ms: int = Field(10000, ge=MIN_TIMEOUT_MS, le=MAX_TIMEOUT_MS)
    max_retries: int = Field(3, ge=0, le=MAX_RETRIES_LIMIT)

    @field_validator("url")
    @classmethod
    def url_allowed(cls, v):
        return _check_url(v)

    @field_validator("events")
    @classmethod
    def events_known(cls, v):
        return _check_events(v)

    @field_validator("headers")
    @classmethod
    def headers_not_reserved(cls, v):
        return _check_headers(v)


class WebhookConfigUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    url: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)
    events: Optional[list[str]] = None
    headers: Optional[dict[str, str]] = None
    timeout_ms: Optional[int] = Field(None, ge=MIN_TIMEOUT_MS, le=MAX_TIMEOUT_MS)
    max_retries: Optional[int] = Field(None, ge=0, le=MAX_RETRIES_LIMIT)
    # SUSPENDED is reserved for the dispatcher
    status: Optional[Literal["ACTIVE", "INACTIVE"]] = None

    @field_validator("url")
    @classmethod
    def url_allowed(cls, v):
        return None if v is None else _check_url(v)

    @field_validator("events")
    @classmethod
    def events_known(cls, v):
        return None if v is None else _check_events(v)

    @field_validator("headers")
    @classmethod
    def headers_not_reserved(cls, v):
        return None if v is None else _check_headers(v)


class WebhookConfigOut(BaseModel):
    id: str
    name: str
    url: str
    description: Optional[str] = None
    events: list[str]
    status: str
    headers: dict[str, str]
    timeout_ms: int
    max_retries: int
    consecutive_dead_letters: int
    secret: str = MASKED_SECRET
    created_by: Optional[str] = None
    suspended_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, config, secret: Optional[str] = None):
        return cls(
            id=config.id,
            name=config.name,
            url=config.url,
            description=config.description,
            events=config.event_list,
            status=config.status,
            headers=config.header_map,
            timeout_ms=config.timeout_ms,
            max_retries=config.max_retries,
            consecutive_dead_letters=config.consecutive_dead_letters or 0,
            secret=secret or MASKED_SECRET,
            created_by=config.created_by,
            suspended_at=config.suspended_at,
            created_at=config.created_at,
            updated_at=config.updated_at,
        )


class WebhookConfigCreatedOut(WebhookConfigOut):
    """Returned once on creation; carries the plaintext signing secret."""


class WebhookConfigPage(BaseModel):
    items: list[WebhookConfigOut]
    total: int
    skip: int
    limit: int


class SecretOut(BaseModel):
    secret: str


class QueuedTestEventOut(BaseModel):
    event_id: str
    message: str = "Test event queued"


# ── Deliveries ───────────────────────────────────────────
class DeliveryOut(BaseModel):
    id: str
    webhook_id: str
    event_id: str
    event_type: Optional[str] = None
    status: str
    attempt: int
    next_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    request_url: Optional[str] = None
    request_signature: Optional[str] = None
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, delivery, event=None):
        return cls(
            id=delivery.id,
            webhook_id=delivery.webhook_id,
            event_id=delivery.event_id,
            event_type=event.event_type if event is not None else None,
            status=delivery.status,
            attempt=delivery.attempt or 0,
            next_attempt_at=delivery.next_attempt_at,
            last_attempt_at=delivery.last_attempt_at,
            completed_at=delivery.completed_at,
            request_url=delivery.request_url,
            request_signature=delivery.request_signature,
            response_status=delivery.response_status,
            response_body=delivery.response_body,
            error_message=delivery.error_message,
            duration_ms=delivery.duration_ms,
            created_at=delivery.created_at,
        )


class DeliveryDetailOut(DeliveryOut):
    request_body: Optional[Any] = None

    @classmethod
    def from_model(cls, delivery, event=None):
        base = DeliveryOut.from_model(delivery, event)
        return cls(**base.model_dump(), request_body=load_json(delivery.request_body, None))


class DeliveryPage(BaseModel):
    items: list[DeliveryOut]
    total: int
    skip: int
    limit: int


# ── Events ───────────────────────────────────────────────
class EventOut(BaseModel):
    id: str
    event_type: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    payload: Any = None
    metadata: dict = Field(default_factory=dict)
    delivery_count: int = 0
    created_at: datetime

    @classmethod
    def from_model(cls, event, delivery_count: int = 0):
        return cls(
            id=event.id,
            event_type=event.event_type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            payload=event.data,
            metadata=event.meta,
            delivery_count=delivery_count,
            created_at=event.created_at,
        )


class EventPage(BaseModel):
    items: list[EventOut]
    total: int
    skip: int
    limit: int


class EventTypeOut(BaseModel):
    value: str
    label: str
