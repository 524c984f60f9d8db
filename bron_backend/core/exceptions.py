"""Error taxonomy and FastAPI exception handlers."""

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bron_backend.core.logging import get_logger, request_context

logger = get_logger(__name__)


class BronError(Exception):
    """Base exception for the bron backend."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        code: str = "E5000",
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_run_error(self) -> dict:
        """Shape stored on a failed run."""
        error = {"message": self.message, "code": self.code}
        if self.details:
            error["details"] = self.details
        return error


class InvalidRequestError(BronError):
    """Malformed or missing input; rejected before any state change."""

    def __init__(self, message: str = "Invalid request", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, code="E4000", details=details)


class NotFoundError(BronError):
    """Resource not found."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status_code=status.HTTP_404_NOT_FOUND, code="E4040")


class IllegalStateError(BronError):
    """Operation attempted from an incompatible run status."""

    def __init__(self, message: str, code: str = "E4090", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, code=code, details=details)


class RunClosedError(IllegalStateError):
    """The run already reached a terminal status."""

    def __init__(self, run_id: str, run_status: str):
        super().__init__(
            f"Run {run_id} is already {run_status}",
            code="E4091",
            details={"run_id": run_id, "status": run_status},
        )


class ResourceExhaustedError(BronError):
    """Turn or tool-call budget exceeded."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_429_TOO_MANY_REQUESTS, code="E4290", details=details)


class RunTimeoutError(BronError):
    """Run or child-await deadline elapsed."""

    def __init__(self, message: str = "Timeout", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_504_GATEWAY_TIMEOUT, code="E5040", details=details)


class UpstreamError(BronError):
    """Reasoning provider or external API error."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(
            message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            code="E5020",
            details={"provider": provider} if provider else {},
        )


class EventLogError(BronError):
    """An event could not be committed to the log."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, code="E5001", details=details)


def _request_id() -> str | None:
    ctx = request_context.get()
    return ctx.get("request_id") if ctx else None


def setup_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers with FastAPI app."""

    @app.exception_handler(BronError)
    async def bron_exception_handler(request: Request, exc: BronError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"Request failed: {exc.message}",
            data={"status_code": exc.status_code, "code": exc.code, "details": exc.details},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.message,
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "request_id": _request_id(),
                },
                **exc.details,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Validation error", data={"errors": exc.errors()})
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": "Validation error",
                "errors": jsonable_errors(exc.errors()),
                "error": {
                    "code": "E4220",
                    "message": "Validation error",
                    "request_id": _request_id(),
                },
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error": {
                    "code": f"E{exc.status_code}0",
                    "message": exc.detail,
                    "request_id": _request_id(),
                },
            },
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Internal server error",
                "error": {
                    "code": "E5000",
                    "message": "Internal server error",
                    "request_id": _request_id(),
                },
            },
        )


def jsonable_errors(errors: list[dict]) -> list[dict]:
    """Drop non-serializable ``ctx`` entries from pydantic error dicts."""
    cleaned = []
    for err in errors:
        item = {k: v for k, v in err.items() if k != "ctx"}
        if "ctx" in err:
            item["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        cleaned.append(item)
    return cleaned
