from flask_socketio import join_room, leave_room, emit
from clubtimer import socketio, store
from flask import current_app, request
from clubtimer.store import SessionNotFound, StoreError
from clubtimer.services.timer.commands import MalformedCommand
from clubtimer.services.timer.controller import IntentEmitter
from clubtimer.services.timer.derived import derived_view
from clubtimer.services.timer.scheduler import attach_authority, detach_authority
from clubtimer.services.timer.state import now_ms
from typing import Any, Dict, Optional
import time


def handle_connect(auth=None):
    emit('connected', {'message': 'Connected to /ws'})


def handle_disconnect(reason=None):
    # When the last authority socket of a session goes away, stop applying
    # its commands after a grace period; pending commands just wait
    ctx = _sid_to_ctx.pop(_get_sid(), None)
    if not ctx:
        return
    session_id = ctx.get('session_id')
    if ctx.get('is_authority') and session_id:
        _authority_count[session_id] = max(0, _authority_count.get(session_id, 0) - 1)
        if current_app.config.get('TESTING'):
            if _authority_count.get(session_id, 0) == 0:
                _release_authority(session_id)
            return
        _schedule_release_if_no_authority(session_id, float(current_app.config.get('AUTHORITY_GRACE_SEC', 2.0)))


def handle_join_session(data):
    data = _event_data(data)
    if data is None:
        return
    session_id = str(data.get('session_id') or '').strip().upper()
    is_authority = bool(data.get('is_authority'))
    if not session_id:
        emit('error', {'message': 'session_id is required'})
        return
    try:
        session = store.get_session(session_id)
    except StoreError as exc:
        current_app.logger.error(f"[join-failed] session={session_id} error={exc}")
        emit('error', {'message': 'Store unavailable', 'session_id': session_id})
        return
    if session is None:
        emit('error', {'message': f'Room "{session_id}" not found', 'session_id': session_id})
        return
    room = f"session:{session_id}"
    join_room(room)
    _sid_to_ctx[_get_sid()] = {'session_id': session_id, 'is_authority': is_authority}
    if is_authority:
        _authority_count[session_id] = _authority_count.get(session_id, 0) + 1
        _cancel_scheduled_release(session_id)
        try:
            attach_authority(current_app._get_current_object(), session_id)
            # The initial queue delivery may have changed state
            session = store.get_session(session_id) or session
        except StoreError as exc:
            current_app.logger.error(f"[authority-attach-failed] session={session_id} error={exc}")
            emit('error', {'message': 'Could not take over the timer', 'session_id': session_id})
    emit('joined', {'room': room, 'is_authority': is_authority})
    emit('session_update', {
        'session_id': session_id,
        'session': session.to_dict(),
        'derived': derived_view(session, now_ms()),
    })


def handle_leave_session(data):
    data = _event_data(data)
    if data is None:
        return
    session_id = str(data.get('session_id') or '').strip().upper()
    if not session_id:
        emit('error', {'message': 'session_id is required'})
        return
    room = f"session:{session_id}"
    leave_room(room)
    emit('left', {'room': room})
    ctx = _sid_to_ctx.get(_get_sid())
    if ctx and ctx.get('is_authority') and ctx.get('session_id') == session_id:
        # Explicit quit: release immediately
        _sid_to_ctx.pop(_get_sid(), None)
        _authority_count[session_id] = max(0, _authority_count.get(session_id, 0) - 1)
        if _authority_count.get(session_id, 0) == 0:
            _release_authority(session_id)


def handle_send_command(data):
    data = _event_data(data)
    if data is None:
        return
    session_id = str(data.get('session_id') or '').strip().upper()
    ctx = _sid_to_ctx.get(_get_sid()) or {}
    session_id = session_id or ctx.get('session_id')
    if not session_id:
        emit('error', {'message': 'session_id is required'})
        return
    origin_id = str(data.get('origin_id') or _get_sid())
    emitter = IntentEmitter(store.outbox(session_id), origin_id)
    try:
        command_id = emitter.send_record(data.get('type'), data.get('payload'))
    except MalformedCommand as exc:
        current_app.logger.warning(f"[command-refused] session={session_id} origin={origin_id} reason={exc}")
        emit('error', {'message': str(exc), 'session_id': session_id})
        return
    except SessionNotFound:
        emit('error', {'message': f'Room "{session_id}" not found', 'session_id': session_id})
        return
    except StoreError as exc:
        current_app.logger.error(f"[command-append-failed] session={session_id} error={exc}")
        emit('error', {'message': 'Failed to send command', 'session_id': session_id})
        return
    emit('command_queued', {'session_id': session_id, 'command_id': command_id})


def handle_ping(data):
    emit('pong', data or {})

# ---- Authority lifecycle helpers ----

_sid_to_ctx: Dict[str, Dict[str, Any]] = {}
_authority_count: Dict[str, int] = {}
_release_deadline: Dict[str, float] = {}

def _get_sid() -> str:
    return request.sid  # type: ignore

def _event_data(data) -> Optional[Dict[str, Any]]:
    """Event payload as a dict; emits an error and returns None for anything else."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        emit('error', {'message': 'event data must be an object'})
        return None
    return data

def _release_authority(session_id: str) -> None:
    """Stop consuming the session's queue; the session itself is kept."""
    detach_authority(session_id)
    _authority_count.pop(session_id, None)
    _release_deadline.pop(session_id, None)

def _schedule_release_if_no_authority(session_id: str, delay_sec: float = 2.0) -> None:
    if _authority_count.get(session_id, 0) > 0:
        return
    _release_deadline[session_id] = time.time() + delay_sec

    def _runner(sid: str, deadline: float):
        sleep_for = max(0.0, deadline - time.time())
        if sleep_for:
            socketio.sleep(sleep_for)
        if _authority_count.get(sid, 0) == 0 and _release_deadline.get(sid) == deadline:
            _release_authority(sid)

    socketio.start_background_task(_runner, session_id, _release_deadline[session_id])

def _cancel_scheduled_release(session_id: str) -> None:
    _release_deadline.pop(session_id, None)


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    namespaces = ['/ws', '/'] if testing else ['/ws']
    for ns in namespaces:
        socketio.on_event('connect', handle_connect, namespace=ns)
        socketio.on_event('disconnect', handle_disconnect, namespace=ns)
        socketio.on_event('join_session', handle_join_session, namespace=ns)
        socketio.on_event('leave_session', handle_leave_session, namespace=ns)
        socketio.on_event('send_command', handle_send_command, namespace=ns)
        socketio.on_event('ping', handle_ping, namespace=ns)
