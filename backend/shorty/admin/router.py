import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shorty.auth.models import User
from shorty.database import get_db
from shorty.dependencies import require_roles
from shorty.organizations.models import Organization
from shorty.scim import service as scim_service
from shorty.scim.models import ScimToken
from shorty.scim.schemas import ScimTokenCreate, ScimTokenCreateResponse, ScimTokenResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def _token_response(token: ScimToken) -> ScimTokenResponse:
    return ScimTokenResponse(
        id=token.id,
        organization_id=token.organization_id,
        token_prefix=token.token_prefix,
        description=token.description,
        created_at=token.created_at,
        expires_at=token.expires_at,
        last_used_at=token.last_used_at,
    )


# --- SCIM Token Management ---


@router.post("/scim/tokens", response_model=ScimTokenCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_scim_token(
    data: ScimTokenCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    admin: Annotated[User, Depends(require_roles("admin"))],
):
    result = await db.execute(select(Organization.id).where(Organization.id == data.organization_id))
    if result.scalar_one_or_none() is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")

    token_record, plaintext_token = await scim_service.create_scim_token(
        db, data.organization_id, data.description, data.expires_in_days
    )
    logger.info("Admin %s created SCIM token %s for organization %s", admin.id, token_record.id, data.organization_id)

    return ScimTokenCreateResponse(**_token_response(token_record).model_dump(), token=plaintext_token)


@router.get("/scim/tokens", response_model=list[ScimTokenResponse])
async def list_scim_tokens(
    db: Annotated[AsyncSession, Depends(get_db)],
    admin: Annotated[User, Depends(require_roles("admin"))],
    organization_id: Optional[int] = None,
):
    tokens = await scim_service.list_scim_tokens(db, organization_id)
    return [_token_response(t) for t in tokens]


@router.delete("/scim/tokens/{token_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_scim_token(
    token_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
    admin: Annotated[User, Depends(require_roles("admin"))],
):
    if not await scim_service.delete_scim_token(db, token_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Token not found")
    logger.info("Admin %s deleted SCIM token %s", admin.id, token_id)
