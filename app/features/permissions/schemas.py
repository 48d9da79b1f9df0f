"""
Pydantic schemas for permission management.

Request and response models for permissions, roles, grants, overrides and
permission checks.
"""
from datetime import datetime
from typing import Dict, Any, List, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.actions import ACTIONS


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionCreate(BaseModel):
    """Schema for creating a new permission. The name is derived from module + action."""
    module_id: str = Field(..., min_length=1, description="Owning module ID")
    action: str = Field(..., min_length=1, max_length=50, description=f"One of {', '.join(ACTIONS)}")
    name: Optional[str] = Field(None, max_length=255, description="Optional; must equal the derived key")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")
    is_system_permission: bool = False

    @field_validator('action')
    @classmethod
    def action_lowercase(cls, v: str) -> str:
        """Ensure action is lowercase."""
        return v.strip().lower()


class PermissionBulkCreate(BaseModel):
    """Schema for creating many permissions at once."""
    permissions: List[PermissionCreate] = Field(..., min_length=1)


class PermissionUpdate(BaseModel):
    """Schema for updating a permission."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None


class PermissionResponse(BaseModel):
    """Schema for permission response."""
    id: str
    name: str
    description: Optional[str]
    module_id: str
    action: str
    is_system_permission: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PermissionListResponse(BaseModel):
    """Schema for paginated permission list."""
    items: List[PermissionResponse]
    total: int
    page: int
    page_size: int
    pages: int


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Unique role name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    priority: int = Field(..., ge=0, description="Authority rank, lower = more authority")
    base_role_id: Optional[str] = Field(None, description="Role this one derives from")
    level: Optional[int] = Field(None, ge=0, description="Job grade; inherited from the base role if omitted")

    @field_validator('name')
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        """Role names cannot be whitespace only."""
        if not v.strip():
            raise ValueError('Role name is required')
        return v.strip()


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    priority: Optional[int] = Field(None, ge=0)
    base_role_id: Optional[str] = None
    level: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class RoleClone(BaseModel):
    """Schema for cloning a role into a custom role."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    permission_ids: Optional[List[str]] = Field(
        None, description="Explicit grants for the clone; omitted = copy the base role's grants"
    )


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    priority: int
    base_role_id: Optional[str]
    level: Optional[int]
    is_system_role: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with permissions."""
    permissions: List[PermissionResponse] = []


# ============================================================================
# Grant Schemas
# ============================================================================

class AssignPermissionsToRole(BaseModel):
    """Schema for replacing a role's full grant set."""
    permission_ids: List[str] = Field(default_factory=list, description="An empty list changes nothing")
    cascade: bool = Field(True, description="Also grant the same action on descendant modules")


class AssignPermissionToRole(BaseModel):
    """Schema for adding one permission to a role."""
    permission_id: str = Field(..., description="Permission ID")
    cascade: bool = True


class GrantChangeResponse(BaseModel):
    """Outcome of a grant mutation."""
    role_id: str
    permission_ids: List[str]
    message: str


# ============================================================================
# Override Schemas
# ============================================================================

class OverrideCreate(BaseModel):
    """Schema for one user permission override."""
    permission_id: str
    effect: Literal["allow", "deny"]
    reason: Optional[str] = Field(None, max_length=1000)
    expires_at: Optional[datetime] = Field(None, description="Null = never expires")


class OverrideBulkCreate(BaseModel):
    """Schema for creating many overrides for one user."""
    overrides: List[OverrideCreate] = Field(..., min_length=1)
    cascade: bool = Field(False, description="Allow cascades down the module tree, deny cascades up")


class OverrideResponse(BaseModel):
    """Schema for override response."""
    id: str
    user_id: str
    permission_id: str
    effect: str
    reason: Optional[str]
    expires_at: Optional[datetime]
    granted_by_user_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OverrideCreateResponse(OverrideResponse):
    """Override response with an optional advisory, e.g. a deny that changes nothing."""
    warning: Optional[str] = None


class OverrideExpiryUpdate(BaseModel):
    """Schema for moving an override's expiry."""
    expires_at: Optional[datetime] = Field(None, description="Null = never expires")


class OverrideStatsResponse(BaseModel):
    """Override counts for one user. allow and deny count active overrides only."""
    total: int
    active: int
    expired: int
    allow: int
    deny: int


class OverrideHolderResponse(OverrideResponse):
    """An override together with the user holding it."""
    user_name: str
    user_email: str
    role_id: Optional[str]
    role_class: Optional[Literal["manager", "employee"]] = None


class DeletedCountResponse(BaseModel):
    deleted: int


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking if a user has a permission."""
    permission_key: str = Field(..., description="Permission key, e.g. accounting.invoices.create")
    user_id: Optional[str] = Field(None, description="User to check (defaults to the caller)")


class PermissionBatchCheckRequest(BaseModel):
    """Schema for checking many permissions at once."""
    permission_keys: List[str] = Field(..., min_length=1)
    user_id: Optional[str] = None


class PermissionDecision(BaseModel):
    """Outcome of one permission check. A denial is a result, not an error."""
    has_access: bool
    reason: str
    details: Optional[Dict[str, Any]] = None


class EffectivePermissionsResponse(BaseModel):
    """Permission names granted to a user by role and by active overrides."""
    role_permissions: List[str] = []
    allow_overrides: List[str] = []
    deny_overrides: List[str] = []


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
