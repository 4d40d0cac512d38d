import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import Settings, settings as default_settings
from .errors import InsufficientBalanceError, StorageError, ValidationError
from .logging import configure_logging
from .middleware import RateLimitMiddleware, install_request_logging
from .models import AddPointsResponse, PayerPoints
from .service import LedgerService
from .storage import LedgerStore, SqlLedgerStore

logger = logging.getLogger(__name__)

INSUFFICIENT_POINTS_MESSAGE = "The user doesn't have enough points!"
INTERNAL_ERROR_MESSAGE = "Something went wrong!"
BAD_BODY_MESSAGE = "Request body must be a JSON object!"

router = APIRouter()


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.ledger_service


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "payer-points"}


@router.post("/add", response_model=AddPointsResponse, tags=["Points"])
def add_points(
    payload: Optional[dict[str, Any]] = Body(default=None),
    service: LedgerService = Depends(get_ledger_service),
) -> AddPointsResponse:
    payload = payload or {}
    grant_id = service.record_grant(payload.get("payer"), payload.get("points"), payload.get("timestamp"))
    return AddPointsResponse(msg="Successfully added!", id=grant_id)


@router.post("/spend", response_model=list[PayerPoints], tags=["Points"])
def spend_points(
    payload: Optional[dict[str, Any]] = Body(default=None),
    service: LedgerService = Depends(get_ledger_service),
) -> list[PayerPoints]:
    payload = payload or {}
    return service.spend(payload.get("points"))


@router.get("/balance", response_model=dict[str, int], tags=["Points"])
def get_balance(service: LedgerService = Depends(get_ledger_service)) -> dict[str, int]:
    return service.get_balance()


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"msg": exc.message, "field": exc.field},
        )

    @app.exception_handler(RequestValidationError)
    async def _malformed_body(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"msg": BAD_BODY_MESSAGE})

    @app.exception_handler(InsufficientBalanceError)
    async def _insufficient_balance(request: Request, exc: InsufficientBalanceError):
        # plain text, not JSON
        return PlainTextResponse(INSUFFICIENT_POINTS_MESSAGE, status_code=status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError):
        logger.error("storage_error", extra={"path": request.url.path, "error": str(exc)}, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"msg": INTERNAL_ERROR_MESSAGE},
        )

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception):
        logger.error("unhandled_error", extra={"path": request.url.path, "error": str(exc)}, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"msg": INTERNAL_ERROR_MESSAGE},
        )


def create_app(settings: Optional[Settings] = None, store: Optional[LedgerStore] = None) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ledger_store = store or SqlLedgerStore(settings.database_url)
        ledger_store.open()
        app.state.ledger_service = LedgerService(ledger_store)
        try:
            yield
        finally:
            ledger_store.close()

    app = FastAPI(
        title="Payer Points API",
        description="Per-payer reward point balances with oldest-first spending",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        RateLimitMiddleware,
        limit=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_request_logging(app)
    _register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)
