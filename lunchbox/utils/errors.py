from fastapi import FastAPI, Request, status
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from pydantic import ValidationError
import traceback
from .logging import get_logger
from .responses import ResponseBuilder

logger = get_logger()


class ReminderValidationError(Exception):
    """Scheduling call rejected before any registry write."""

    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class RegistryUnavailableError(Exception):
    """The reminder registry's backing store could not be reached."""

    def __init__(
        self,
        message: str = "Reminder registry is unavailable",
        error_code: str = "REGISTRY_UNAVAILABLE",
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class BusinessLogicError(Exception):
    """Custom exception for business logic errors."""

    def __init__(self, message: str, error_code: str = "BLOC_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class AuthorizationError(Exception):
    """Custom exception for authorization errors."""

    def __init__(self, message: str = "Access denied", error_code: str = "AUTHZ_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


def _format_validation_errors(errors) -> list:
    formatted_errors = []
    for error in errors:
        field_path = " -> ".join(str(loc) for loc in error["loc"])
        formatted_errors.append(
            {
                "field": field_path,
                "message": error["msg"],
                "type": error["type"],
            }
        )
    return formatted_errors


def setup_error_handlers(app: FastAPI):
    """Setup custom error handlers."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.error(f"HTTP Exception: {exc.status_code} - {exc.detail}")
        return ResponseBuilder.error(
            request=request,
            message=str(exc.detail),
            error_code="HTTP_ERROR",
            status_code=exc.status_code,
            meta={"http_status": exc.status_code},
        )

    """
    RequestValidationError is a sub-class of Pydantic's ValidationError.
    """

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        logger.error(f"Request Validation Error: {exc.errors()}")

        return ResponseBuilder.error(
            request=request,
            message="Request validation failed",
            errors=_format_validation_errors(exc.errors()),
            error_code="REQUEST_VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )

    @app.exception_handler(ValidationError)
    async def pydantic_validation_exception_handler(
        request: Request, exc: ValidationError
    ):
        logger.error(f"Pydantic Validation Error: {exc.errors()}")

        return ResponseBuilder.error(
            request=request,
            message="Data validation failed",
            errors=_format_validation_errors(exc.errors()),
            error_code="INTERNAL_VALIDATION_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.exception_handler(ReminderValidationError)
    async def reminder_validation_exception_handler(
        request: Request, exc: ReminderValidationError
    ):
        logger.warning(f"Reminder Validation Error: {exc.message}")

        return ResponseBuilder.error(
            request=request,
            message=exc.message,
            error_code=exc.error_code,
            status_code=status.HTTP_400_BAD_REQUEST,
            meta={"error_type": "VALIDATION_ERROR"},
        )

    @app.exception_handler(RegistryUnavailableError)
    async def registry_unavailable_exception_handler(
        request: Request, exc: RegistryUnavailableError
    ):
        logger.error(f"Registry Unavailable: {exc.message}")

        return ResponseBuilder.error(
            request=request,
            message=exc.message,
            error_code=exc.error_code,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            meta={"error_type": "REGISTRY_ERROR"},
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"SQLAlchemy Error: {str(exc)}")

        # Don't expose internal database errors to users
        return ResponseBuilder.error(
            request=request,
            message="A database error occurred",
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            meta={"error_type": "SQLALCHEMY_ERROR"},
        )

    @app.exception_handler(BusinessLogicError)
    async def business_logic_exception_handler(
        request: Request, exc: BusinessLogicError
    ):
        logger.error(f"Business Logic Error: {exc.message}")

        return ResponseBuilder.error(
            request=request,
            message=exc.message,
            error_code=exc.error_code,
            status_code=status.HTTP_400_BAD_REQUEST,
            meta={"error_type": "BUSINESS_ERROR"},
        )

    @app.exception_handler(AuthorizationError)
    async def authorization_exception_handler(
        request: Request, exc: AuthorizationError
    ):
        logger.error(f"Authorization Error: {exc.message}")

        return ResponseBuilder.error(
            request=request,
            message=exc.message,
            error_code="FORBIDDEN",
            status_code=status.HTTP_403_FORBIDDEN,
            meta={"error_type": "AUTHORIZATION_ERROR"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all other unhandled exceptions"""
        logger.error(f"Unhandled Exception: {str(exc)}")
        logger.error(f"Traceback: {traceback.format_exc()}")

        return ResponseBuilder.error(
            request=request,
            message="An internal server error occurred",
            error_code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            meta={"error_type": "INTERNAL_ERROR"},
        )
