from typing import Any, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from shorty.config import settings
from shorty.database import get_db
from shorty.scim import service as scim_service
from shorty.scim.auth import ScimContext, get_scim_context
from shorty.scim.errors import ScimError, ScimUnauthorizedError, ScimValidationError
from shorty.scim.schemas import (
    SCIM_ERROR_SCHEMA,
    SCIM_GROUP_SCHEMA,
    SCIM_LIST_RESPONSE_SCHEMA,
    SCIM_RESOURCE_TYPE_SCHEMA,
    SCIM_SCHEMA_SCHEMA,
    SCIM_SERVICE_PROVIDER_SCHEMA,
    SCIM_USER_SCHEMA,
    ScimGroupRequest,
    ScimPatchRequest,
    ScimUserRequest,
)

router = APIRouter()

SCIM_CONTENT_TYPE = "application/scim+json"

ModelT = TypeVar("ModelT", bound=BaseModel)


def _scim_response(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=data, status_code=status_code, media_type=SCIM_CONTENT_TYPE)


def _scim_error(status_code: int, detail: str, scim_type: Optional[str] = None, headers=None) -> JSONResponse:
    error = {
        "schemas": [SCIM_ERROR_SCHEMA],
        "status": str(status_code),
        "detail": detail,
    }
    if scim_type:
        error["scimType"] = scim_type
    return JSONResponse(content=error, status_code=status_code, media_type=SCIM_CONTENT_TYPE, headers=headers)


async def scim_exception_handler(request: Request, exc: ScimError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, ScimUnauthorizedError) else None
    return _scim_error(exc.status_code, exc.detail, exc.scim_type, headers=headers)


def _get_base_url(request: Request) -> str:
    if settings.base_url:
        return settings.base_url.rstrip("/")
    scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("x-forwarded-host", request.url.netloc)
    return f"{scheme}://{host}"


async def _parse_body(request: Request, model: Type[ModelT]) -> ModelT:
    try:
        payload = await request.json()
    except ValueError:
        raise ScimValidationError("Request body is not valid JSON")
    if not isinstance(payload, dict):
        raise ScimValidationError("Request body must be a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        error = exc.errors()[0]
        location = ".".join(str(part) for part in error["loc"])
        raise ScimValidationError(f"{location}: {error['msg']}" if location else error["msg"])


# --- Users ---


@router.get("/Users")
async def list_users(
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
    filter: Optional[str] = None,
    startIndex: Optional[str] = None,
    count: Optional[str] = None,
):
    start_index, page_size = scim_service.normalize_paging(startIndex, count)
    result = await scim_service.list_users(db, ctx, filter, start_index, page_size, _get_base_url(request))
    return _scim_response(result)


@router.get("/Users/{user_id}")
async def get_user(
    user_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
):
    result = await scim_service.get_user(db, ctx, user_id, _get_base_url(request))
    return _scim_response(result)


@router.post("/Users")
async def create_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
):
    data = await _parse_body(request, ScimUserRequest)
    result = await scim_service.create_user(db, ctx, data, _get_base_url(request))
    return _scim_response(result, status_code=201)


@router.put("/Users/{user_id}")
async def replace_user(
    user_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
):
    data = await _parse_body(request, ScimUserRequest)
    result = await scim_service.replace_user(db, ctx, user_id, data, _get_base_url(request))
    return _scim_response(result)


@router.patch("/Users/{user_id}")
async def patch_user(
    user_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
):
    patch = await _parse_body(request, ScimPatchRequest)
    result = await scim_service.patch_user(db, ctx, user_id, patch, _get_base_url(request))
    return _scim_response(result)


@router.delete("/Users/{user_id}")
async def delete_user(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
):
    await scim_service.delete_user(db, ctx, user_id)
    return Response(status_code=204)


# --- Groups ---


@router.get("/Groups")
async def list_groups(
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
    filter: Optional[str] = None,
    startIndex: Optional[str] = None,
    count: Optional[str] = None,
):
    start_index, page_size = scim_service.normalize_paging(startIndex, count)
    result = await scim_service.list_groups(db, ctx, filter, start_index, page_size, _get_base_url(request))
    return _scim_response(result)


@router.get("/Groups/{group_id}")
async def get_group(
    group_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
):
    result = await scim_service.get_group(db, ctx, group_id, _get_base_url(request))
    return _scim_response(result)


@router.post("/Groups")
async def create_group(
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
):
    data = await _parse_body(request, ScimGroupRequest)
    result = await scim_service.create_group(db, ctx, data, _get_base_url(request))
    return _scim_response(result, status_code=201)


@router.put("/Groups/{group_id}")
async def replace_group(
    group_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
):
    data = await _parse_body(request, ScimGroupRequest)
    result = await scim_service.replace_group(db, ctx, group_id, data, _get_base_url(request))
    return _scim_response(result)


@router.patch("/Groups/{group_id}")
async def patch_group(
    group_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
):
    patch = await _parse_body(request, ScimPatchRequest)
    result = await scim_service.patch_group(db, ctx, group_id, patch, _get_base_url(request))
    return _scim_response(result)


@router.delete("/Groups/{group_id}")
async def delete_group(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: ScimContext = Depends(get_scim_context),
):
    await scim_service.delete_group(db, ctx, group_id)
    return Response(status_code=204)


# --- Discovery ---


@router.get("/ServiceProviderConfig", dependencies=[Depends(get_scim_context)])
async def service_provider_config(request: Request):
    config = {
        "schemas": [SCIM_SERVICE_PROVIDER_SCHEMA],
        "patch": {"supported": True},
        "bulk": {"supported": False, "maxOperations": 0, "maxPayloadSize": 0},
        "filter": {"supported": True, "maxResults": settings.scim_max_results},
        "changePassword": {"supported": False},
        "sort": {"supported": False},
        "etag": {"supported": False},
        "authenticationSchemes": [
            {
                "type": "oauthbearertoken",
                "name": "OAuth Bearer Token",
                "description": "Authentication scheme using the OAuth Bearer Token Standard",
                "specUri": "https://www.rfc-editor.org/info/rfc6750",
                "primary": True,
            }
        ],
        "meta": {
            "resourceType": "ServiceProviderConfig",
            "location": f"{_get_base_url(request)}/scim/v2/ServiceProviderConfig",
        },
    }
    return _scim_response(config)


@router.get("/ResourceTypes", dependencies=[Depends(get_scim_context)])
async def resource_types(request: Request):
    base_url = _get_base_url(request)
    types = [
        {
            "schemas": [SCIM_RESOURCE_TYPE_SCHEMA],
            "id": resource,
            "name": resource,
            "endpoint": endpoint,
            "description": description,
            "schema": schema,
            "meta": {
                "resourceType": "ResourceType",
                "location": f"{base_url}/scim/v2/ResourceTypes/{resource}",
            },
        }
        for resource, endpoint, description, schema in (
            ("User", "/Users", "User Account", SCIM_USER_SCHEMA),
            ("Group", "/Groups", "Group", SCIM_GROUP_SCHEMA),
        )
    ]
    return _scim_response(
        {
            "schemas": [SCIM_LIST_RESPONSE_SCHEMA],
            "totalResults": len(types),
            "startIndex": 1,
            "itemsPerPage": len(types),
            "Resources": types,
        }
    )


def _attribute(name: str, type_: str, required: bool = False, multi_valued: bool = False, **extra) -> dict:
    attribute = {
        "name": name,
        "type": type_,
        "multiValued": multi_valued,
        "required": required,
        "mutability": "readWrite",
        "returned": "default",
    }
    attribute.update(extra)
    return attribute


USER_SCHEMA_ATTRIBUTES = [
    _attribute("userName", "string", required=True, caseExact=False, uniqueness="server"),
    _attribute(
        "name",
        "complex",
        subAttributes=[
            _attribute("givenName", "string"),
            _attribute("familyName", "string"),
        ],
    ),
    _attribute("displayName", "string"),
    _attribute(
        "emails",
        "complex",
        multi_valued=True,
        subAttributes=[
            _attribute("value", "string"),
            _attribute("type", "string"),
            _attribute("primary", "boolean"),
        ],
    ),
    _attribute("active", "boolean"),
    _attribute("externalId", "string", caseExact=True),
]

GROUP_SCHEMA_ATTRIBUTES = [
    _attribute("displayName", "string", required=True),
    _attribute(
        "members",
        "complex",
        multi_valued=True,
        subAttributes=[
            _attribute("value", "string", mutability="immutable"),
            _attribute("$ref", "reference", mutability="immutable"),
            _attribute("display", "string", mutability="readOnly"),
        ],
    ),
    _attribute("externalId", "string", caseExact=True),
]


@router.get("/Schemas", dependencies=[Depends(get_scim_context)])
async def schemas(request: Request):
    base_url = _get_base_url(request)
    schema_list = [
        {
            "schemas": [SCIM_SCHEMA_SCHEMA],
            "id": schema,
            "name": name,
            "description": description,
            "attributes": attributes,
            "meta": {
                "resourceType": "Schema",
                "location": f"{base_url}/scim/v2/Schemas/{schema}",
            },
        }
        for schema, name, description, attributes in (
            (SCIM_USER_SCHEMA, "User", "User Account", USER_SCHEMA_ATTRIBUTES),
            (SCIM_GROUP_SCHEMA, "Group", "Group", GROUP_SCHEMA_ATTRIBUTES),
        )
    ]
    return _scim_response(
        {
            "schemas": [SCIM_LIST_RESPONSE_SCHEMA],
            "totalResults": len(schema_list),
            "startIndex": 1,
            "itemsPerPage": len(schema_list),
            "Resources": schema_list,
        }
    )
