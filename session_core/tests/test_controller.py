"""
Tests for SessionController: login/logout, forced logouts, refresh, restore, and two instances
sharing one durable store.
"""
import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from session_core.controller import SessionController
from session_core.durable_store import DurableStore
from session_core.state import SessionState
from session_core.sync import TOPIC_ENDED, TOPIC_EXTEND_REQUESTED


def _controller(engine, clock, origin="instance-a", **kwargs) -> SessionController:
    controller = SessionController(DurableStore(engine, origin=origin), clock=clock, **kwargs)
    controller.start()
    return controller


def _ended_reasons(controller):
    events = controller.broadcast.snapshot()["events"]
    return [e["payload"]["reason"] for e in events if e["type"] == TOPIC_ENDED]


def test_starts_logged_out_without_persisted_token(engine, clock):
    controller = _controller(engine, clock)
    assert controller.state is SessionState.LOGGED_OUT
    assert controller.subject is None
    assert clock.pending() == 0


def test_login_sets_subject_and_arms_expiry(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.login(make_token(3600, user_id=3, role="admin"))
    assert controller.state is SessionState.AUTHENTICATED
    assert controller.subject.subject_id == "3"
    assert controller.subject.role == "admin"
    assert clock.pending() == 1  # expiry only; idle disabled by default


def test_expired_token_logs_out_within_a_second(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.login(make_token(-10))
    clock.advance(1)
    assert controller.state is SessionState.LOGGED_OUT
    assert controller.token is None
    assert DurableStore(engine, origin="reader").get("token") is None
    assert _ended_reasons(controller) == ["expired"]


def test_expiry_not_deferred_by_activity(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.set_idle_timeout(30)
    controller.login(make_token(120))
    for _ in range(10):
        clock.advance(10)
        controller.record_activity("keydown")
    clock.advance(21)
    assert controller.state is SessionState.LOGGED_OUT


def test_idle_timeout_forces_logout(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.set_idle_timeout(5)
    controller.login(make_token(24 * 3600))
    clock.advance(240)
    assert controller.state is SessionState.WARNED
    assert controller.warning.remaining_ms == 60000
    clock.advance(61)
    assert controller.state is SessionState.LOGGED_OUT
    assert _ended_reasons(controller) == ["idle_timeout"]
    assert clock.pending() == 0


def test_activity_during_warning_keeps_session(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.set_idle_timeout(5)
    controller.login(make_token(24 * 3600))
    clock.advance(250)
    assert controller.record_activity("mousemove") is True
    assert controller.state is SessionState.WARNED  # warning not dismissed by plain activity
    clock.advance(51)  # t=301, countdown finished
    assert controller.state is SessionState.AUTHENTICATED
    clock.advance(248)  # t=549, second warning showed at t=490
    assert controller.state is SessionState.WARNED
    clock.advance(2)
    assert controller.state is SessionState.LOGGED_OUT


def test_logout_calls_server_and_clears_everything(engine, clock, make_token):
    invalidate = AsyncMock()
    controller = _controller(engine, clock, invalidate_server_side=invalidate)
    controller.set_idle_timeout(5)
    controller.login(make_token())
    asyncio.run(controller.logout())
    invalidate.assert_awaited_once()
    assert controller.state is SessionState.LOGGED_OUT
    assert controller.token is None
    assert clock.pending() == 0
    assert _ended_reasons(controller) == ["logout"]


def test_logout_succeeds_when_server_call_fails(engine, clock, make_token):
    invalidate = AsyncMock(side_effect=ConnectionError("portal API down"))
    controller = _controller(engine, clock, invalidate_server_side=invalidate)
    controller.login(make_token())
    asyncio.run(controller.logout())
    assert controller.state is SessionState.LOGGED_OUT
    assert DurableStore(engine, origin="reader").get("token") is None


def test_replace_token_does_not_reset_idle_clock(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.set_idle_timeout(5)
    controller.login(make_token(600))
    clock.advance(200)
    assert controller.replace_token(make_token(7200)) is True
    assert controller.claims.expires_at == int(clock.now() + 7200)
    clock.advance(40)  # t=240 from login, not from replace
    assert controller.state is SessionState.WARNED


def test_replace_token_rearms_expiry(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.login(make_token(60))
    controller.replace_token(make_token(3600))
    clock.advance(120)
    assert controller.state is SessionState.AUTHENTICATED
    assert clock.pending() == 1


def test_replace_token_ignored_when_logged_out(engine, clock, make_token):
    controller = _controller(engine, clock)
    assert controller.replace_token(make_token()) is False
    assert controller.token is None


def test_refresh_and_extend_success(engine, clock, make_token):
    issued_at = clock.now()
    controller = _controller(engine, clock, refresh_credential=AsyncMock(return_value=make_token(7200)))
    controller.set_idle_timeout(5)
    controller.login(make_token(600))
    clock.advance(245)
    assert controller.state is SessionState.WARNED

    assert asyncio.run(controller.refresh_and_extend()) is True
    assert controller.state is SessionState.AUTHENTICATED
    assert controller.warning.active is False
    assert controller.claims.expires_at == issued_at + 7200
    clock.advance(239)  # idle window restarted at the extension
    assert controller.state is SessionState.AUTHENTICATED
    clock.advance(1)
    assert controller.state is SessionState.WARNED


@pytest.mark.parametrize("refresh", [AsyncMock(return_value=None), AsyncMock(side_effect=TimeoutError("slow"))])
def test_refresh_failure_leaves_session_unchanged(engine, clock, make_token, refresh):
    token = make_token(600)
    controller = _controller(engine, clock, refresh_credential=refresh)
    controller.set_idle_timeout(5)
    controller.login(token)
    clock.advance(245)
    assert asyncio.run(controller.refresh_and_extend()) is False
    assert controller.state is SessionState.WARNED
    assert controller.token == token
    types = [e["type"] for e in controller.broadcast.snapshot()["events"]]
    assert "session.extend_failed" in types
    clock.advance(56)  # existing timers run to their natural end
    assert controller.state is SessionState.LOGGED_OUT


def test_refresh_not_attempted_when_logged_out(engine, clock):
    refresh = AsyncMock(return_value="x.y.z")
    controller = _controller(engine, clock, refresh_credential=refresh)
    assert asyncio.run(controller.extend_session()) is False
    refresh.assert_not_awaited()


def test_refresh_result_discarded_if_session_ended_meanwhile(engine, clock, make_token):
    controller = _controller(engine, clock)

    async def slow_refresh():
        clock.advance(7200)  # token expires while the request is in flight
        return make_token(3600)

    controller._refresh = slow_refresh
    controller.login(make_token(60))
    assert asyncio.run(controller.refresh_and_extend()) is False
    assert controller.state is SessionState.LOGGED_OUT
    assert controller.token is None


def test_restores_persisted_session_on_start(engine, clock, make_token):
    first = _controller(engine, clock, origin="before")
    first.set_idle_timeout(10)
    first.login(make_token(3600, user_id=11))
    first.close()

    restored = _controller(engine, clock, origin="after")
    assert restored.state is SessionState.AUTHENTICATED
    assert restored.subject.subject_id == "11"
    assert restored.idle_timeout_minutes == 10.0
    clock.advance(9 * 60)
    assert restored.state is SessionState.WARNED


def test_malformed_persisted_token_is_not_forced_out(engine, clock):
    DurableStore(engine, origin="older-build").set("token", "not-a-jwt")
    controller = _controller(engine, clock)
    assert controller.state is SessionState.AUTHENTICATED
    assert controller.claims is None
    assert controller.subject is None
    clock.advance(30 * 24 * 3600)
    assert controller.state is SessionState.AUTHENTICATED


def test_logout_in_one_instance_logs_out_the_other(engine, clock, make_token):
    a = _controller(engine, clock, origin="tab-a", invalidate_server_side=AsyncMock())
    b = _controller(engine, clock, origin="tab-b")
    a.login(make_token())
    b.sync.poll_once()
    assert b.state is SessionState.AUTHENTICATED  # adopted the token written by tab-a

    asyncio.run(a.logout())
    b.sync.poll_once()
    assert b.state is SessionState.LOGGED_OUT
    assert _ended_reasons(b) == ["remote_logout"]


def test_refresh_in_one_instance_rearms_expiry_in_the_other(engine, clock, make_token):
    a = _controller(engine, clock, origin="tab-a", refresh_credential=AsyncMock(return_value=make_token(7200)))
    b = _controller(engine, clock, origin="tab-b")
    a.login(make_token(60))
    b.sync.poll_once()
    asyncio.run(a.refresh_and_extend())
    b.sync.poll_once()
    clock.advance(120)
    assert a.state is SessionState.AUTHENTICATED
    assert b.state is SessionState.AUTHENTICATED
    assert b.claims.expires_at == a.claims.expires_at


def test_idle_timeout_setting_propagates(engine, clock, make_token):
    a = _controller(engine, clock, origin="tab-a")
    b = _controller(engine, clock, origin="tab-b")
    a.login(make_token(24 * 3600))
    b.sync.poll_once()

    a.set_idle_timeout(2)
    b.sync.poll_once()
    assert b.idle_timeout_minutes == 2.0
    clock.advance(121)
    assert a.state is SessionState.LOGGED_OUT
    assert b.state is SessionState.LOGGED_OUT


def test_disabling_idle_timeout_stops_warning(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.set_idle_timeout(5)
    controller.login(make_token(24 * 3600))
    clock.advance(250)
    controller.set_idle_timeout(0)
    assert controller.state is SessionState.AUTHENTICATED
    clock.advance(3600)
    assert controller.state is SessionState.AUTHENTICATED


def test_extend_requested_over_broadcast(engine, clock, make_token):
    refresh = AsyncMock(return_value=make_token(7200))
    controller = _controller(engine, clock, refresh_credential=refresh)
    controller.login(make_token(600))

    async def scenario():
        controller.broadcast.publish(TOPIC_EXTEND_REQUESTED)
        for _ in range(5):
            await asyncio.sleep(0)

    asyncio.run(scenario())
    refresh.assert_awaited_once()
    assert controller.claims.expires_at == int(clock.now() + 7200)


def test_extend_request_outside_loop_is_ignored(engine, clock, make_token):
    refresh = AsyncMock(return_value=make_token(7200))
    controller = _controller(engine, clock, refresh_credential=refresh)
    controller.login(make_token(600))
    controller.broadcast.publish(TOPIC_EXTEND_REQUESTED)
    refresh.assert_not_awaited()


def test_close_disposes_timers_but_keeps_token(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.set_idle_timeout(5)
    token = make_token()
    controller.login(token)
    controller.close()
    assert clock.pending() == 0
    assert DurableStore(engine, origin="reader").get("token") == token


def test_snapshot_shape(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.set_idle_timeout(5)
    controller.login(make_token(600, user_id=5, role="viewer"))
    clock.advance(241)
    snap = controller.snapshot()
    assert snap["state"] == "warned"
    assert snap["subject"] == {"id": "5", "role": "viewer"}
    assert snap["idle_timeout_minutes"] == 5.0
    assert snap["warning"] == {"active": True, "remaining_ms": 59000}


def test_remote_logout_delivered_after_change_feed_pruned(engine, clock, make_token):
    a = _controller(engine, clock, origin="tab-a", invalidate_server_side=AsyncMock())
    b = _controller(engine, clock, origin="tab-b")
    a.login(make_token())
    b.sync.poll_once()
    assert b.state is SessionState.AUTHENTICATED

    DurableStore(engine, origin="janitor").prune(-10)
    asyncio.run(a.logout())
    b.sync.poll_once()
    assert b.state is SessionState.LOGGED_OUT


def test_dismissed_warning_still_logs_out_when_idle(engine, clock, make_token):
    controller = _controller(engine, clock)
    controller.set_idle_timeout(5)
    controller.login(make_token(24 * 3600))
    clock.advance(250)
    assert controller.dismiss_warning() is True
    assert controller.state is SessionState.AUTHENTICATED
    assert controller.warning.active is False
    clock.advance(51)
    assert controller.state is SessionState.LOGGED_OUT
    assert _ended_reasons(controller) == ["idle_timeout"]


def test_dismiss_warning_when_logged_out(engine, clock):
    assert _controller(engine, clock).dismiss_warning() is False


def test_user_persisted_next_to_token(engine, clock, make_token):
    controller = _controller(engine, clock, invalidate_server_side=AsyncMock())
    reader = DurableStore(engine, origin="reader")
    controller.login(make_token(user_id=12, role="operator"))
    assert json.loads(reader.get("user")) == {"id": "12", "role": "operator"}
    asyncio.run(controller.logout())
    assert reader.get("user") is None


def test_user_not_persisted_for_unreadable_token(engine, clock):
    controller = _controller(engine, clock)
    controller.login("opaque-session-id")
    assert controller.state is SessionState.AUTHENTICATED
    assert DurableStore(engine, origin="reader").get("user") is None
