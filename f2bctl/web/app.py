"""
FastAPI Application

Main application factory for the f2bctl control plane.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..core.exceptions import (
    AuthError,
    ControlPlaneError,
    NotFoundError,
    ResolutionError,
    TransportError,
    ValidationError,
)
from ..events import HubLogHandler
from .auth_helpers import require_operator
from .config import WebConfig, get_config, set_config
from .dependencies import (
    get_hub,
    get_manager,
    get_settings_store,
    get_storage,
    reset_dependencies,
)
from .middleware import RequestIdMiddleware

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_app = None


# =============================================================================
# Error Mapping
# =============================================================================


def _status_for(exc: ControlPlaneError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ResolutionError):
        return 422
    if isinstance(exc, TransportError):
        return 504 if exc.reason == TransportError.REASON_TIMEOUT else 502
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, AuthError):
        return 401
    return 500


def _error_body(request: Request, exc: ControlPlaneError) -> dict:
    body = {
        "detail": str(exc),
        "error": type(exc).__name__,
        "request_id": getattr(request.state, "request_id", None),
    }
    if exc.stage:
        body["stage"] = exc.stage
    if isinstance(exc, TransportError):
        body["reason"] = exc.reason
        body["server_id"] = exc.host_id
    elif isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    elif isinstance(exc, ResolutionError):
        body["variable"] = exc.variable
    return body


async def control_plane_error_handler(request: Request, exc: ControlPlaneError) -> JSONResponse:
    status = _status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {status}: {exc}")
    return JSONResponse(status_code=status, content=_error_body(request, exc))


# =============================================================================
# Application Factory
# =============================================================================


def create_app(config: Optional[WebConfig] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        config: Optional configuration. Uses global config if not provided.

    Returns:
        FastAPI application instance
    """
    if config is None:
        config = get_config()
    else:
        set_config(config)
        reset_dependencies("config")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start storage, settings, the broadcast hub and connectors, in that order."""
        logger.info("Starting f2bctl control plane...")

        storage = get_storage()
        settings = get_settings_store()
        hub = get_hub()
        manager = get_manager()

        await hub.start()
        console_handler = HubLogHandler(hub, enabled=settings.get().console_output)
        logging.getLogger().addHandler(console_handler)
        settings.add_listener(console_handler.apply_settings)

        added = await manager.sync()
        logger.info(f"Managing {len(added)} enabled fail2ban host(s)")

        yield

        logger.info("Shutting down f2bctl control plane...")
        logging.getLogger().removeHandler(console_handler)
        await manager.close()
        await hub.stop()
        storage.close()
        reset_dependencies()

    app = FastAPI(
        title="f2bctl",
        description="Control plane for fail2ban installations",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(ControlPlaneError, control_plane_error_handler)

    app.state.config = config

    from .routes import callbacks, events, filters, jails, servers, system

    operator = [Depends(require_operator)]
    app.include_router(callbacks.router, prefix="/api", tags=["Callbacks"])
    app.include_router(jails.router, prefix="/api", tags=["Jails"], dependencies=operator)
    app.include_router(filters.router, prefix="/api", tags=["Filters"], dependencies=operator)
    app.include_router(servers.router, prefix="/api", tags=["Servers"], dependencies=operator)
    app.include_router(system.router, prefix="/api", tags=["System"], dependencies=operator)
    app.include_router(events.router, prefix="/api", tags=["Events"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        hub = get_hub()
        return {
            "status": "healthy",
            "version": __version__,
            "components": {
                "api": "up",
                "websocket": "up" if hub.running else "down",
                "observers": hub.observer_count,
            },
        }

    global _app
    _app = app
    return app


def get_app() -> Any:
    """Get the current FastAPI application instance."""
    global _app
    if _app is None:
        _app = create_app()
    return _app


def run_server(
    host: Optional[str] = None,
    port: Optional[int] = None,
    reload: bool = False,
) -> None:
    """
    Run the web server.

    Args:
        host: Host to bind to (default from config)
        port: Port to bind to (default from config)
        reload: Enable auto-reload for development
    """
    import uvicorn

    config = get_config()
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format=LOG_FORMAT,
    )
    uvicorn.run(
        "f2bctl.web.app:get_app",
        factory=True,
        host=host or config.host,
        port=port or config.port,
        reload=reload,
    )


def main() -> None:
    """Main entry point for the f2bctl control plane."""
    run_server()


if __name__ == "__main__":
    main()
