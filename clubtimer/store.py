"""Shared session store with push-based subscriptions.

Sessions and their pending commands live in the database. Every committed
change re-delivers a full snapshot to the in-process subscribers of that
session (the whole document, or the whole pending command list) and fans
the session document out to its Socket.IO room through ``broadcast``.

All methods expect an active application context.
"""

import json
import logging
import threading
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from clubtimer import db
from clubtimer.models import TimerCommand, TimerSession
from clubtimer.services.timer.state import STATE_FIELDS, CONFIG_FIELDS, Session, SessionConfig, now_ms

logger = logging.getLogger(__name__)


class StoreError(Exception):
    pass


class SessionNotFound(StoreError):
    pass


class SessionExists(StoreError):
    pass


class _Subscription:
    def __init__(self, on_change: Callable, on_error: Optional[Callable]):
        self.on_change = on_change
        self.on_error = on_error


class SessionStore:
    def __init__(self, app=None):
        self.broadcast: Optional[Callable[[str, Optional[Dict[str, Any]]], None]] = None
        self.clock = now_ms
        self._lock = threading.RLock()
        self._session_subs: Dict[str, List[_Subscription]] = defaultdict(list)
        self._command_subs: Dict[str, List[_Subscription]] = defaultdict(list)
        if app is not None:
            self.init_app(app)

    def init_app(self, app, broadcast=None):
        app.extensions['clubtimer.store'] = self
        self.broadcast = broadcast

    # ---- sessions ----

    def create_session(self, code: str, title: str = '', config: Optional[SessionConfig] = None) -> Session:
        if self.get_row(code) is not None:
            raise SessionExists(code)
        ts = self.clock()
        row = TimerSession(code=code, title=title or '', created_at=ts, updated_at=ts)
        row.config = config or SessionConfig()
        db.session.add(row)
        self._commit('create', code)
        logger.info(f"[session-create] session={code}")
        self._publish_session(code)
        return row.to_session()

    def get_session(self, code: str) -> Optional[Session]:
        row = self.get_row(code)
        return row.to_session() if row else None

    def session_exists(self, code: str) -> bool:
        return self.get_session(code) is not None

    def patch_state(self, code: str, patch: Dict[str, Any]) -> None:
        unknown = set(patch) - set(STATE_FIELDS)
        if unknown:
            raise ValueError(f'unknown state fields: {sorted(unknown)}')
        row = self._require(code)
        for key, value in patch.items():
            setattr(row, key, value)
        row.updated_at = self.clock()
        self._commit('patch-state', code)
        self._publish_session(code)

    def patch_config(self, code: str, patch: Dict[str, Any]) -> None:
        unknown = set(patch) - set(CONFIG_FIELDS)
        if unknown:
            raise ValueError(f'unknown config fields: {sorted(unknown)}')
        row = self._require(code)
        row.config = row.config.merge(patch)
        row.updated_at = self.clock()
        self._commit('patch-config', code)
        self._publish_session(code)

    def touch_controller(self, code: str, client_id: str) -> None:
        row = self._require(code)
        row.controller_client_id = client_id
        row.controller_last_seen_at = self.clock()
        self._commit('touch-controller', code)
        self._publish_session(code)

    def delete_session(self, code: str) -> bool:
        row = self.get_row(code)
        if row is None:
            return False
        TimerCommand.query.filter_by(session_code=code).delete()
        db.session.delete(row)
        self._commit('delete-session', code)
        logger.info(f"[session-delete] session={code}")
        self._publish_session(code)
        self._publish_commands(code)
        return True

    def stale_sessions(self, older_than_ms: int) -> List[str]:
        rows = TimerSession.query.filter(TimerSession.updated_at < older_than_ms).all()
        return [r.code for r in rows]

    # ---- commands ----

    def append_command(self, code: str, record: Dict[str, Any]) -> str:
        """Queue a command record; ``sentAtMs`` is stamped by the sender."""
        self._require(code)
        command_id = uuid.uuid4().hex
        db.session.add(TimerCommand(
            id=command_id,
            session_code=code,
            type=record.get('type'),
            payload=json.dumps(record.get('payload')),
            sent_at_ms=record.get('sentAtMs'),
            origin_id=record.get('originId'),
        ))
        self._commit('append-command', code)
        self._publish_commands(code)
        return command_id

    def list_commands(self, code: str) -> List[Dict[str, Any]]:
        try:
            rows = (TimerCommand.query.filter_by(session_code=code)
                    .order_by(TimerCommand.sent_at_ms, TimerCommand.id).all())
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreError(f'read failed for commands of {code}') from exc
        return [r.to_dict() for r in rows]

    def delete_command(self, code: str, command_id: str) -> bool:
        try:
            row = TimerCommand.query.filter_by(session_code=code, id=command_id).first()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreError(f'read failed for command {command_id}') from exc
        if row is None:
            return False
        db.session.delete(row)
        self._commit('delete-command', code)
        self._publish_commands(code)
        return True

    # ---- subscriptions ----

    def subscribe_session(self, code: str, on_change: Callable, on_error: Optional[Callable] = None) -> Callable[[], None]:
        """Deliver the session (or None) now and after every change."""
        sub = _Subscription(on_change, on_error)
        with self._lock:
            self._session_subs[code].append(sub)
        self._deliver([sub], self.get_session, code)
        return lambda: self._remove(self._session_subs, code, sub)

    def subscribe_commands(self, code: str, on_change: Callable, on_error: Optional[Callable] = None) -> Callable[[], None]:
        """Deliver the full pending command list now and after every change."""
        sub = _Subscription(on_change, on_error)
        with self._lock:
            self._command_subs[code].append(sub)
        self._deliver([sub], self.list_commands, code)
        return lambda: self._remove(self._command_subs, code, sub)

    def clear_subscriptions(self) -> None:
        with self._lock:
            self._session_subs.clear()
            self._command_subs.clear()

    # ---- capabilities ----

    def reader(self, code: str) -> 'SessionReader':
        return SessionReader(self, code)

    def writer(self, code: str) -> 'StateWriter':
        return StateWriter(self, code)

    def outbox(self, code: str) -> 'CommandOutbox':
        return CommandOutbox(self, code)

    def inbox(self, code: str) -> 'CommandInbox':
        return CommandInbox(self, code)

    # ---- internals ----

    def get_row(self, code: str) -> Optional[TimerSession]:
        try:
            return db.session.get(TimerSession, code)
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreError(f'read failed for session {code}') from exc

    def _require(self, code: str) -> TimerSession:
        row = self.get_row(code)
        if row is None:
            raise SessionNotFound(code)
        return row

    def _commit(self, action: str, code: str) -> None:
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreError(f'{action} failed for session {code}') from exc

    def _remove(self, table, code, sub) -> None:
        with self._lock:
            subs = table.get(code)
            if subs and sub in subs:
                subs.remove(sub)
            if not subs:
                table.pop(code, None)

    def _publish_session(self, code: str) -> None:
        with self._lock:
            subs = list(self._session_subs.get(code, ()))
        snapshot = self._deliver(subs, self.get_session, code)
        if self.broadcast is not None and snapshot is not _FAILED:
            try:
                self.broadcast(code, snapshot.to_dict() if snapshot else None)
            except Exception:
                logger.exception(f"[broadcast-failed] session={code}")

    def _publish_commands(self, code: str) -> None:
        with self._lock:
            subs = list(self._command_subs.get(code, ()))
        if subs:
            self._deliver(subs, self.list_commands, code)

    def _deliver(self, subs, read, code):
        try:
            snapshot = read(code)
        except StoreError as exc:
            logger.error(f"[snapshot-failed] session={code} error={exc}")
            for sub in subs:
                if sub.on_error is not None:
                    sub.on_error(exc)
            return _FAILED
        for sub in subs:
            try:
                sub.on_change(snapshot)
            except Exception:
                # One broken listener must not starve the others
                logger.exception(f"[listener-failed] session={code}")
        return snapshot


_FAILED = object()


class SessionReader:
    """Read-only view of one session, handed to controllers."""

    def __init__(self, store: SessionStore, code: str):
        self._store = store
        self.code = code

    def get(self) -> Optional[Session]:
        return self._store.get_session(self.code)

    def subscribe(self, on_change, on_error=None):
        return self._store.subscribe_session(self.code, on_change, on_error)


class StateWriter(SessionReader):
    """Write access to a session's state; only the authority gets one."""

    def patch_state(self, patch: Dict[str, Any]) -> None:
        self._store.patch_state(self.code, patch)

    def patch_config(self, patch: Dict[str, Any]) -> None:
        self._store.patch_config(self.code, patch)


class CommandOutbox:
    def __init__(self, store: SessionStore, code: str):
        self._store = store
        self.code = code

    def append(self, record: Dict[str, Any]) -> str:
        return self._store.append_command(self.code, record)


class CommandInbox:
    def __init__(self, store: SessionStore, code: str):
        self._store = store
        self.code = code

    def subscribe(self, on_change, on_error=None):
        return self._store.subscribe_commands(self.code, on_change, on_error)

    def delete(self, command_id: str) -> bool:
        return self._store.delete_command(self.code, command_id)
