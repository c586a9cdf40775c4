import logging
import threading

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import CORS_ORIGINS, DOWNLOAD_CORS_HEADERS, LOG_LEVEL
from .core.errors import ConfigurationError, DownloadError
from .db import Base, SessionLocal, engine
from .migrations import ensure_schema
from .routes import catalog, issue_download
from .routes.issue_download import ISSUE_DOWNLOAD_PATH
from .services.download_issuer import build_download_issuer
from .services.entitlements import EntitlementStore

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront Download API", version="0.1.0")

_BASE_SCHEMA_LOCK = threading.Lock()
_BASE_SCHEMA_READY = False


def _ensure_base_schema() -> None:
    global _BASE_SCHEMA_READY
    if _BASE_SCHEMA_READY:
        return
    with _BASE_SCHEMA_LOCK:
        if _BASE_SCHEMA_READY:
            return
        try:
            Base.metadata.create_all(bind=engine)
        except OperationalError as exc:
            # Two workers starting against one SQLite file may race here.
            if "already exists" not in str(exc).lower():
                raise
        _BASE_SCHEMA_READY = True


class StorefrontCORSMiddleware(CORSMiddleware):
    """CORS for the site routes. /issue-download sets its own headers."""

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] == "http" and scope["path"] == ISSUE_DOWNLOAD_PATH:
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)


def _error_response(request: Request, status_code: int, message: str) -> JSONResponse:
    headers = DOWNLOAD_CORS_HEADERS if request.url.path == ISSUE_DOWNLOAD_PATH else None
    return JSONResponse(
        status_code=status_code,
        content={"error": message},
        headers=headers,
    )


@app.exception_handler(DownloadError)
async def download_error_handler(request: Request, exc: DownloadError):
    return _error_response(request, exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Framework errors (unknown route, wrong method) in the same shape."""
    message = "Method not allowed" if exc.status_code == 405 else str(exc.detail)
    response = _error_response(request, exc.status_code, message)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


app.add_middleware(
    StorefrontCORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


@app.on_event("startup")
def on_startup() -> None:
    _ensure_base_schema()
    ensure_schema()

    store = EntitlementStore(SessionLocal)
    app.state.entitlement_store = store
    try:
        app.state.download_issuer = build_download_issuer(store)
    except ConfigurationError as exc:
        # Keep serving; every issuance answers 500 until the env is fixed.
        logger.error("Download issuer disabled: %s", exc)
        app.state.download_issuer = None


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.head("/health")
def health_check_head():
    return Response(status_code=200)


app.include_router(issue_download.router, tags=["downloads"])
app.include_router(catalog.router, prefix="/games", tags=["games"])
