"""User model definition using SQLAlchemy Core."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    Uuid,
    func,
    text,
)

metadata = MetaData()


def _utcnow() -> datetime:
    return datetime.now(UTC)


users = Table(
    "users",
    metadata,
    # Internal ID (for joins & performance)
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
    # Identity provider uid (SOURCE OF TRUTH for "who is this")
    Column("external_id", Text, nullable=False, unique=True, index=True),
    # Auth-related info (mirrored from the identity provider)
    Column("email", Text, nullable=False, index=True),
    Column("email_verified", Boolean, nullable=False, server_default=text("false")),
    Column("auth_provider", Text, nullable=False, server_default=text("'firebase'")),
    # Profile info (mutable)
    Column("full_name", Text),
    Column("given_name", Text),
    Column("family_name", Text),
    Column("photo_url", Text),
    Column("phone", String(20)),
    # App-specific fields (the identity provider does NOT own these)
    Column("role", Text, nullable=False, index=True),
    Column("specialty", Text),
    # Account state; deactivated instead of deleted
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    # Audit
    Column(
        "created_at",
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    ),
    Column(
        "updated_at",
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    ),
    Column("last_login_at", DateTime(timezone=True)),
    Column("last_sync_at", DateTime(timezone=True)),
    CheckConstraint("role IN ('PATIENT', 'PROVIDER', 'ADMIN')", name="ck_users_role"),
)
