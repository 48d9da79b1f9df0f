"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class UserUpdate(BaseModel):
    """Schema for updating the caller's own profile."""
    name: str | None = Field(None, min_length=1, max_length=255)


class UserRoleUpdate(BaseModel):
    """Schema for moving a user to another role."""
    role_id: str = Field(..., min_length=1, description="Role to assign")


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    is_active: bool
    role_id: str | None = None
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str

    model_config = {"from_attributes": True}
