import logging

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from melodymint.api.v1 import api_v1_router
from melodymint.features.payments.errors import SettlementError
from melodymint.platform.config import settings

logger = logging.getLogger(__name__)

_SETTLEMENT_PREFIX = "/api/v1/payments"


def _settlement_error_response(error: str, kind: str, details: str | None = None) -> JSONResponse:
    body = {"error": error, "kind": kind}
    if details:
        body["details"] = details
    return JSONResponse(status_code=500, content=body)


async def _handle_settlement_error(request: Request, exc: SettlementError) -> JSONResponse:
    logger.warning("%s %s failed with %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return _settlement_error_response(exc.message, exc.kind, exc.details)


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not request.url.path.startswith(_SETTLEMENT_PREFIX):
        return await request_validation_exception_handler(request, exc)

    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return _settlement_error_response("Invalid request body", "ValidationError", problems or None)


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _settlement_error_response("Internal server error", "InternalError")


def create_app() -> FastAPI:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="MelodyMint Settlement API")

    allowed_origins = [o.strip() for o in str(settings.allowed_origins).split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )

    app.add_exception_handler(SettlementError, _handle_settlement_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(Exception, _handle_unexpected)

    app.include_router(api_v1_router, prefix="/api/v1")
    return app


app = create_app()
