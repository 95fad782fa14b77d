from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SCIM_USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
SCIM_GROUP_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Group"
SCIM_LIST_RESPONSE_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:ListResponse"
SCIM_ERROR_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:Error"
SCIM_PATCH_OP_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:PatchOp"
SCIM_SERVICE_PROVIDER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:ServiceProviderConfig"
SCIM_RESOURCE_TYPE_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:ResourceType"
SCIM_SCHEMA_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Schema"


class ScimName(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    given_name: Optional[str] = Field(None, alias="givenName")
    family_name: Optional[str] = Field(None, alias="familyName")
    formatted: Optional[str] = None


class ScimEmail(BaseModel):
    value: str
    type: Optional[str] = None
    primary: bool = False


class ScimUserRequest(BaseModel):
    """Body of POST/PUT /Users. Unknown attributes are ignored."""

    model_config = ConfigDict(populate_by_name=True)

    schemas: List[str] = [SCIM_USER_SCHEMA]
    external_id: Optional[str] = Field(None, alias="externalId")
    user_name: Optional[str] = Field(None, alias="userName")
    name: Optional[ScimName] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    emails: List[ScimEmail] = []
    active: Optional[bool] = None

    def primary_email(self) -> Optional[str]:
        if self.user_name:
            return self.user_name
        for email in self.emails:
            if email.primary:
                return email.value
        return self.emails[0].value if self.emails else None


class ScimMemberRef(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    value: str
    display: Optional[str] = None


class ScimGroupRequest(BaseModel):
    """Body of POST/PUT /Groups."""

    model_config = ConfigDict(populate_by_name=True)

    schemas: List[str] = [SCIM_GROUP_SCHEMA]
    external_id: Optional[str] = Field(None, alias="externalId")
    display_name: Optional[str] = Field(None, alias="displayName")
    members: List[ScimMemberRef] = []


class ScimPatchOperation(BaseModel):
    op: Literal["add", "replace", "remove"]
    path: Optional[str] = None
    # Untyped on purpose: each path narrows the JSON value it understands.
    value: Any = None

    @field_validator("op", mode="before")
    @classmethod
    def _normalize_op(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class ScimPatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schemas: List[str] = [SCIM_PATCH_OP_SCHEMA]
    operations: List[ScimPatchOperation] = Field(alias="Operations")


# --- Token administration ---


class ScimTokenCreate(BaseModel):
    organization_id: int
    description: str = ""
    expires_in_days: Optional[int] = Field(None, ge=1)


class ScimTokenResponse(BaseModel):
    id: int
    organization_id: int
    token_prefix: str
    description: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


class ScimTokenCreateResponse(ScimTokenResponse):
    token: str
