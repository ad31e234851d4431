import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from promomail.config import settings
from promomail.exceptions import PromoMailError
from promomail.routers import generate
from promomail.schemas.generation import ErrorResponse

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _error_body(message: str, diagnostic_log: str | None = None) -> dict:
    return ErrorResponse(error=message, diagnostic_log=diagnostic_log).model_dump(by_alias=True, exclude_none=True)


def _validation_message(exc: RequestValidationError) -> str:
    """First validation problem, phrased as the validator phrased it."""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    cause = (first.get("ctx") or {}).get("error")
    if cause is not None:
        return str(cause)
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{field}: {first.get('msg')}" if field else str(first.get("msg"))


app = FastAPI(title=settings.app_name)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    message = _validation_message(exc)
    logger.info("Rejected %s %s: %s", request.method, request.url.path, message)
    return JSONResponse(status_code=400, content=_error_body(message))


@app.exception_handler(PromoMailError)
async def promomail_error_handler(request: Request, exc: PromoMailError):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content=_error_body(str(exc) or "Failed to generate email", exc.diagnostic_log),
    )


app.include_router(generate.router)
