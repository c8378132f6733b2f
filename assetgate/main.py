import asyncio
import contextlib
import logging
import re
import uuid
from typing import Callable

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from assetgate.admin_session import AccessTokenVerifier, TokenVerifier
from assetgate.catalog import CATALOG_FILE, JsonCatalog, PhotoCatalog
from assetgate.config import Settings
from assetgate.errors import install_error_handlers
from assetgate.public_hashes import HashStore, JsonHashStore, PublicHashRegistry
from assetgate.routes import assets, health
from assetgate.security import ClientIpResolver, RateLimitPolicy
from assetgate.signing import DownloadSigner, now_ms

logger = logging.getLogger(__name__)

HASH_STORE_FILE = "_public_hashes.json"
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_logging_configured = False


def configure_logging(level: str = "INFO") -> None:
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _logging_configured = True


async def _rotation_loop(registry: PublicHashRegistry, interval_s: int):
    while True:
        await asyncio.sleep(interval_s)
        try:
            await run_in_threadpool(registry.rotate_due)
        except Exception:
            logger.exception("public hash rotation failed")


def create_app(
    settings: Settings | None = None,
    catalog: PhotoCatalog | None = None,
    hash_store: HashStore | None = None,
    token_verifier: TokenVerifier | None = None,
    clock: Callable[[], int] = now_ms,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        interval = settings.public_hash_rotation_interval_s
        if interval > 0:
            task = asyncio.create_task(_rotation_loop(app.state.hash_registry, interval))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    app = FastAPI(
        title="assetgate",
        version=settings.app_version,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.catalog = catalog or JsonCatalog(settings.projects_dir / CATALOG_FILE)
    app.state.hash_registry = PublicHashRegistry(
        hash_store or JsonHashStore(settings.projects_dir / HASH_STORE_FILE),
        ttl_ms=settings.public_hash_ttl_ms,
        clock=clock,
    )
    app.state.signer = DownloadSigner(settings.download_secret, settings.download_ttl_ms, clock=clock)
    app.state.token_verifier = token_verifier or AccessTokenVerifier(
        settings.jwt_access_secret, settings.jwt_issuer, settings.jwt_audience
    )
    app.state.rate_limits = RateLimitPolicy(settings.rate_limits, settings.rate_limit_window_s)
    app.state.client_ip = ClientIpResolver(settings.trusted_proxy_nets)

    install_error_handlers(app)

    @app.middleware("http")
    async def request_context_middleware(request, call_next):
        incoming = request.headers.get("x-request-id") or ""
        request_id = incoming if _REQUEST_ID_RE.match(incoming) else uuid.uuid4().hex
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        response.headers["Referrer-Policy"] = "no-referrer"
        return response

    @app.get("/robots.txt", include_in_schema=False)
    def robots_txt():
        return PlainTextResponse(
            "User-agent: *\nDisallow: /assets/\n",
            media_type="text/plain; charset=utf-8",
        )

    app.include_router(health.router)
    app.include_router(assets.router)

    logger.info(
        "app configured: projects_dir=%s signed_downloads=%s version=%s",
        settings.projects_dir,
        settings.require_signed_downloads,
        settings.app_version,
    )
    return app
