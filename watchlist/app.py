from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Tuple

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from watchlist.api.error_handling import register_exception_handlers
from watchlist.api.routes import router
from watchlist.config import Settings
from watchlist.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# frontend dev servers; a wildcard is not allowed alongside credentialed requests
_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
}
# auth answers and watchlist data must never be cached by a shared proxy
_NO_STORE = "no-store, no-cache, must-revalidate, private"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from watchlist.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        await runtime.close()
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))
    else:
        logger.info("runtime_closed")


app = FastAPI(title="Watchlist Tracker", version=__version__, lifespan=lifespan)

_cors_origins: List[str] = Settings.from_env().cors_allow_origins or _DEV_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-User-Id", "X-Username"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client-supplied or generated) for logs and the response."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    path = request.url.path
    if path.startswith("/api/") or path == "/healthz":
        response.headers.setdefault("Cache-Control", _NO_STORE)
    return response


register_exception_handlers(app)
app.include_router(router)


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error_type=type(exc).__name__)
        return False
    return True


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report primary store and Redis reachability.

    Redis shows as ``not_configured`` when sessions live in the primary store.
    """
    from watchlist.service.runtime import get_runtime

    runtime = get_runtime()
    probes: List[Tuple[str, Callable[[], Any]]] = [("database", runtime.store.verify_connection)]
    if runtime.cache is not None:
        probes.append(("redis", runtime.cache.verify_connection))

    checks: Dict[str, Dict[str, Any]] = {}
    for component, check in probes:
        checks[component] = {"status": "healthy" if await _probe(component, check) else "unhealthy"}
    checks["database"]["type"] = type(runtime.store).__name__
    checks.setdefault("redis", {"status": "not_configured"})

    healthy = all(c["status"] != "unhealthy" for c in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
