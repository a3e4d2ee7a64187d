"""
Session API for the portal UI: login/logout/extend, dismissing the idle warning, activity signals,
the idle-timeout setting, and an event feed the UI polls for idle warnings and "session ended" redirects.
Handlers are async so session timers are scheduled on the server's event loop, not a worker thread.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from session_core.controller import SessionController

router = APIRouter(prefix="/session")


class LoginRequest(BaseModel):
    token: str = Field(min_length=1)


class ActivityRequest(BaseModel):
    kind: str
    visible: bool | None = None


class IdleTimeoutRequest(BaseModel):
    minutes: float = Field(ge=0)


def get_controller(request: Request) -> SessionController:
    """Dependency: the app's single SessionController."""
    return request.app.state.controller


def _require_authenticated(controller: SessionController) -> None:
    if not controller.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "not_authenticated", "error_description": "No active session"},
        )


@router.get("")
async def get_session(controller: SessionController = Depends(get_controller)):
    return controller.snapshot()


@router.post("/login")
async def login(body: LoginRequest, controller: SessionController = Depends(get_controller)):
    controller.login(body.token)
    return controller.snapshot()


@router.post("/logout")
async def logout(controller: SessionController = Depends(get_controller)):
    await controller.logout()
    return controller.snapshot()


@router.post("/extend")
async def extend(controller: SessionController = Depends(get_controller)):
    """Silent refresh. extended=false means the refresh failed; the session is unchanged."""
    _require_authenticated(controller)
    extended = await controller.refresh_and_extend()
    return {"extended": extended, **controller.snapshot()}


@router.post("/warning/dismiss")
async def dismiss_warning(controller: SessionController = Depends(get_controller)):
    """Close the idle warning without extending. The forced logout still happens if the user stays idle."""
    _require_authenticated(controller)
    dismissed = controller.dismiss_warning()
    return {"dismissed": dismissed, **controller.snapshot()}


@router.post("/activity")
async def activity(body: ActivityRequest, controller: SessionController = Depends(get_controller)):
    return {"handled": controller.record_activity(body.kind, visible=body.visible)}


@router.put("/idle-timeout")
async def set_idle_timeout(body: IdleTimeoutRequest, controller: SessionController = Depends(get_controller)):
    controller.set_idle_timeout(body.minutes)
    return controller.snapshot()


@router.get("/events")
async def events(since_id: int = 0, limit: int = 100, controller: SessionController = Depends(get_controller)):
    return controller.broadcast.snapshot(since_id=since_id, limit=min(limit, 500))
