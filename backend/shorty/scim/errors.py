from typing import Optional


class ScimError(Exception):
    """Error rendered as a SCIM error envelope (RFC 7644 §3.12)."""

    status_code: int = 500
    scim_type: Optional[str] = None

    def __init__(self, detail: str, scim_type: Optional[str] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if scim_type is not None:
            self.scim_type = scim_type


class ScimValidationError(ScimError):
    status_code = 400
    scim_type = "invalidValue"


class ScimConflictError(ScimError):
    status_code = 409
    scim_type = "uniqueness"


class ScimNotFoundError(ScimError):
    status_code = 404


class ScimUnauthorizedError(ScimError):
    status_code = 401


class ScimInternalError(ScimError):
    status_code = 500
