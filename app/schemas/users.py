"""User schemas for request/response validation."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.core.roles import Role


class UserResponse(BaseModel):
    """Application user as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: str
    email: EmailStr
    email_verified: bool
    auth_provider: str
    full_name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    photo_url: str | None = None
    phone: str | None = Field(None, max_length=20)
    role: Role
    specialty: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime
    last_login_at: datetime | None = None
    last_sync_at: datetime | None = None


class UserListResponse(BaseModel):
    """Paginated user listing for admins."""

    users: list[UserResponse]
    total: int
    page: int
    page_size: int
