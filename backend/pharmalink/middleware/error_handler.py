import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from pydantic import ValidationError as PydanticValidationError
from fastapi.exceptions import HTTPException
from pharmalink.errors import PharmaLinkError

logger = logging.getLogger(__name__)


def error_response(status_code: int, code: str, message, details=None) -> JSONResponse:
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)

        except PharmaLinkError as pe:
            if pe.status_code >= 500:
                logger.error(f"{pe.code} on {request.method} {request.url.path}: {pe.__cause__ or pe}")
            return error_response(pe.status_code, pe.code, pe.message)

        except PydanticValidationError as ve:
            return error_response(422, "VALIDATION_ERROR", str(ve), ve.errors(include_url=False))

        except HTTPException as he:
            return error_response(he.status_code, "HTTP_EXCEPTION", he.detail)

        except Exception:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            return error_response(500, "INTERNAL_ERROR", "An internal error occurred.")
