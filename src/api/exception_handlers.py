import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from src.domain.exceptions import (
    BookingDomainError,
    ProtectedStateError,
    SlotUnavailableError,
)

logger = logging.getLogger(__name__)

ADMIN_PREFIX = "/admin"


async def domain_error_handler(request: Request, exc: BookingDomainError) -> JSONResponse:
    """Staff get the full message; competitors get the public one."""
    if exc.status_code >= 500:
        logger.error("Domain error on %s: %s", request.url.path, exc)
    else:
        logger.info("Domain error on %s: %s", request.url.path, exc)

    if request.url.path.startswith(ADMIN_PREFIX):
        content = {"detail": str(exc)}
    else:
        content = {"detail": exc.public_message}
    if isinstance(exc, (SlotUnavailableError, ProtectedStateError)):
        content["slot_ids"] = exc.slot_ids
    return JSONResponse(status_code=exc.status_code, content=content)


async def general_500_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


EXCEPTION_HANDLERS = {
    BookingDomainError: domain_error_handler,
    Exception: general_500_exception_handler,
}


def register_exception_handlers(app) -> None:
    for exception_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exception_class, handler)
