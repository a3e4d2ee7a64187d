"""
Portal Web: session API.
Holds the session for this portal instance; all instances sharing SESSION_DATABASE_URL stay in sync.
Port 8000 by default.
"""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from portal_web.config import (
    HOST,
    HTTP_TIMEOUT_SECONDS,
    LOGOUT_PATH,
    PORT,
    PORTAL_API_URL,
    REFRESH_PATH,
)
from portal_web.session_routes import router as session_router
from session_core.clock import LoopClock
from session_core.collaborators import PortalAuthClient
from session_core.config import SESSION_DATABASE_URL, SYNC_POLL_INTERVAL_SECONDS
from session_core.controller import SessionController
from session_core.database import create_store_engine, init_db
from session_core.durable_store import DurableStore
from session_core.token_store import TokenStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _default_lifespan(app: FastAPI):
    """Create the store, controller and HTTP collaborators; poll other instances until shutdown."""
    engine = create_store_engine(SESSION_DATABASE_URL)
    init_db(engine)
    store = DurableStore(engine)
    tokens = TokenStore(store)
    auth = PortalAuthClient(
        PORTAL_API_URL,
        token_getter=tokens.get,
        timeout=HTTP_TIMEOUT_SECONDS,
        refresh_path=REFRESH_PATH,
        logout_path=LOGOUT_PATH,
    )
    controller = SessionController(
        store,
        clock=LoopClock(),
        token_store=tokens,
        refresh_credential=auth.refresh_credential,
        invalidate_server_side=auth.invalidate_server_side,
    )
    controller.start()
    app.state.controller = controller
    poller = asyncio.create_task(controller.sync.run(SYNC_POLL_INTERVAL_SECONDS))
    logger.info("Session restored as %s (instance %s)", controller.state.value, store.origin)
    try:
        yield
    finally:
        poller.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await poller
        controller.close()
        await auth.aclose()
        engine.dispose()


def create_app(controller: SessionController | None = None) -> FastAPI:
    """
    Build the app. With an explicit controller (tests, embedding) the caller owns its lifecycle;
    otherwise the lifespan builds one from config.
    """
    app = FastAPI(
        title="Portal Web",
        version="0.1.0",
        lifespan=None if controller is not None else _default_lifespan,
    )
    if controller is not None:
        app.state.controller = controller
    app.include_router(session_router, tags=["session"])

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "portal_web"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "portal_web.main:app",
        host=HOST,
        port=PORT,
        reload=True,
    )
