import time
from typing import Dict, Optional

from clubtimer import socketio, store
from clubtimer.store import SessionNotFound
from .authority import Authority


_authorities: Dict[str, Authority] = {}
_tick_generation: Dict[str, int] = {}


def get_authority(session_id: str) -> Optional[Authority]:
    return _authorities.get(session_id)


def _emit_beep(session, elapsed: int) -> None:
    socketio.emit('beep', {'session_id': session.id, 'elapsed': elapsed, 'count': session.state.beep_count},
                  to=f"session:{session.id}", namespace='/ws')


def attach_authority(app, session_id: str) -> Authority:
    """Start consuming a session's command queue in this process.

    - Idempotent: an attached authority is returned as is
    - Raises SessionNotFound when the session does not exist
    - Starts the tick loop unless TESTING (see ENABLE_TICKER_IN_TESTS)
    """
    existing = _authorities.get(session_id)
    if existing is not None and existing.running:
        return existing

    authority = Authority(
        store,
        session_id,
        resume_continues_elapsed=bool(app.config.get('RESUME_CONTINUES_ELAPSED', True)),
        on_beep=_emit_beep,
    )
    authority.start()
    if authority.lost:
        raise SessionNotFound(session_id)
    _authorities[session_id] = authority
    schedule_ticker(app, session_id)
    return authority


def detach_authority(session_id: str) -> None:
    authority = _authorities.pop(session_id, None)
    _tick_generation.pop(session_id, None)
    if authority is not None:
        authority.stop()


def detach_all() -> None:
    for session_id in list(_authorities):
        detach_authority(session_id)


def schedule_ticker(app, session_id: str) -> None:
    """Run the authority's local evaluation loop in a background task.

    - No-ops in TESTING mode
    - One loop per attach; a re-attach bumps the generation so a stale loop exits
    - Each pass runs Authority.tick, which decides and records overtime alerts
    """
    if app.config.get('TESTING') and not app.config.get('ENABLE_TICKER_IN_TESTS'):
        return

    generation = _tick_generation.get(session_id, 0) + 1
    _tick_generation[session_id] = generation
    interval = max(10, int(app.config.get('TICK_INTERVAL_MS', 250))) / 1000.0
    try:
        hb = int(app.config.get('TIMER_HEARTBEAT_SEC', 0))
    except (TypeError, ValueError):
        hb = 0

    def _worker(sid: str, gen: int):
        last_heartbeat = time.time()
        while _tick_generation.get(sid) == gen:
            authority = _authorities.get(sid)
            if authority is None or not authority.running:
                break
            with app.app_context():
                try:
                    authority.tick()
                except Exception:
                    app.logger.exception(f"[tick-failed] session={sid}")
            if hb > 0 and time.time() - last_heartbeat >= hb:
                last_heartbeat = time.time()
                state = authority.session.state if authority.session else None
                app.logger.info(
                    f"[tick-heartbeat] session={sid} status={state.status if state else None} "
                    f"connection={authority.connection}"
                )
            socketio.sleep(interval)
        app.logger.info(f"[tick-exit] session={sid} generation={gen}")

    socketio.start_background_task(_worker, session_id, generation)
