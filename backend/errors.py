# errors.py — Error taxonomy and the normalised error envelope
# Every failure leaves the API as {"error": {"code", "message", "details"?}}

from typing import Any, List, Optional

from fastapi import HTTPException

# Status -> stable code, used for HTTPExceptions raised outside this module
STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "VALIDATION_ERROR",
    429: "TOO_MANY_REQUESTS",
    500: "INTERNAL_SERVER_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


class AppError(HTTPException):
    status_code = 500
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str, details: Optional[List[Any]] = None, headers: Optional[dict] = None):
        super().__init__(status_code=self.status_code, detail=message, headers=headers)
        self.message = message
        self.details = details


class BadRequestError(AppError):
    status_code = 400
    code = "BAD_REQUEST"


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "No autorizado", details: Optional[List[Any]] = None):
        super().__init__(message, details, headers={"WWW-Authenticate": "Bearer"})


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


def error_code_for(exc: HTTPException) -> str:
    if isinstance(exc, AppError):
        return exc.code
    return STATUS_CODES.get(exc.status_code, "ERROR")


def error_body(code: str, message: str, details: Optional[List[Any]] = None, request_id: Optional[str] = None) -> dict:
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    body = {"error": error}
    if request_id:
        body["requestId"] = request_id
    return body


def validation_details(errors: List[dict]) -> List[dict]:
    """Flatten pydantic errors into [{field, message}] pairs, one per violation."""
    details = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "header")]
        details.append({
            "field": ".".join(loc) or "body",
            "message": str(err.get("msg", "Valor inválido")),
        })
    return details
