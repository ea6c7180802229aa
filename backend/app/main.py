import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.admin_review import router as admin_review_router
from app.api.v1.receipts import router as receipts_router
from app.core.config import get_settings
from app.core.dependencies import build_rate_source, build_spreadsheet_sink, engine
from app.core.errors import ReceiptError
from app.models.receipt import Base

settings = get_settings()

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Internal server error"

app = FastAPI(
    title="Receipt Finalization API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_handles():
    if engine is not None:
        Base.metadata.create_all(bind=engine)
    app.state.rate_source = build_rate_source()
    app.state.spreadsheet_sink = build_spreadsheet_sink()
    if app.state.spreadsheet_sink is None:
        logger.info("Spreadsheet sync disabled")


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(receipts_router, prefix="/api/v1", tags=["receipts"])
app.include_router(admin_review_router, prefix="/api/v1", tags=["admin"])


@app.exception_handler(ReceiptError)
async def _receipt_error_handler(request: Request, exc: ReceiptError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.kind, request.url.path, exc.message)
        detail = exc.message if settings.expose_error_details else GENERIC_ERROR
    else:
        detail = exc.message
    return JSONResponse(status_code=exc.status_code, content={"detail": detail, "kind": exc.kind})


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": GENERIC_ERROR})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR})


@app.get("/health")
async def health():
    return {"status": "ok", "base_currency": settings.base_currency}
