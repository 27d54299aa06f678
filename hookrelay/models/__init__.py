"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String

from hookrelay.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def load_json(raw, default):
    """Decode a JSON text column, falling back to ``default`` on bad data."""
    if raw is None or raw == "":
        return default
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


# ── User ────────────────────────────────────────────────
class User(Base):
    """Dashboard user; every user acts on behalf of exactly one company (tenant)."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    email = Column(String(320), unique=True, nullable=False)
    hashed_password = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True)
    is_superuser = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
