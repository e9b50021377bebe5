"""Remote-control side: a read-only session mirror and an intent emitter.

Controllers never write timer state. Every user action becomes a command
appended to the session's queue, stamped with the sender's clock.
"""

import logging
import random
import string
from typing import Callable, Optional

from clubtimer.store import SessionNotFound, SessionStore
from . import commands as codec
from .derived import derived_view
from .state import Preset, Session, now_ms as wall_clock_ms

logger = logging.getLogger(__name__)

CONNECTED = 'connected'
DISCONNECTED = 'disconnected'


def generate_origin_id(clock: Callable[[], int] = wall_clock_ms) -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f'client-{clock()}-{suffix}'


class SessionMirror:
    """Local copy of a session kept current by the store subscription."""

    def __init__(self, reader, on_update: Optional[Callable[[Optional[Session]], None]] = None):
        self.reader = reader
        self.on_update = on_update
        self.session: Optional[Session] = None
        self.connection = DISCONNECTED
        self.lost = False
        self._unsubscribe = None

    def start(self) -> 'SessionMirror':
        self._unsubscribe = self.reader.subscribe(self._on_change, self._on_error)
        return self

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_change(self, session: Optional[Session]) -> None:
        if session is None:
            logger.warning(f"[session-lost] session={self.reader.code}")
            self.lost = True
            self.connection = DISCONNECTED
        else:
            self.session = session
            self.connection = CONNECTED
        if self.on_update is not None:
            self.on_update(session)

    def _on_error(self, exc: Exception) -> None:
        # Keep the last known state; only the indicator changes
        self.connection = DISCONNECTED
        logger.error(f"[subscription-error] session={self.reader.code} error={exc}")

    def view(self, now: int) -> Optional[dict]:
        if self.session is None:
            return None
        return derived_view(self.session, now)


class IntentEmitter:
    """Turns user actions into queued commands."""

    def __init__(self, outbox, origin_id: str, clock: Callable[[], int] = wall_clock_ms):
        self.outbox = outbox
        self.origin_id = origin_id
        self.clock = clock
        self.last_command_id: Optional[str] = None

    def send(self, payload: codec.Payload) -> str:
        record = codec.encode(payload, self.clock(), self.origin_id)
        command_id = self.outbox.append(record)
        self.last_command_id = command_id
        logger.debug(f"[command-sent] session={self.outbox.code} id={command_id} type={record['type']} origin={self.origin_id}")
        return command_id

    def send_record(self, command_type: str, payload) -> str:
        """Validate a raw ``(type, payload)`` pair from a client and queue it."""
        return self.send(codec.decode_payload(command_type, payload))

    def set_preset(self, preset: Preset) -> str:
        return self.send(codec.SetPreset(preset.id, preset.lower_sec, preset.mid_sec, preset.upper_sec))

    def start(self) -> str:
        return self.send(codec.Start())

    def stop(self) -> str:
        return self.send(codec.Stop())

    def reset(self) -> str:
        return self.send(codec.Reset())

    def update_config(self, show_timer=None, overtime_mode=None, presets=None) -> str:
        payload = codec.UpdateConfig(
            show_timer=show_timer,
            overtime_mode=overtime_mode,
            presets=tuple(presets) if presets is not None else None,
        )
        # Round-trip through the codec so a bad patch never reaches the queue
        return self.send_record(codec.UPDATE_CONFIG, codec.encode_payload(payload))


class Controller:
    """A remote control bound to one existing session."""

    def __init__(self, store: SessionStore, session_id: str, origin_id: Optional[str] = None,
                 clock: Callable[[], int] = wall_clock_ms):
        self.store = store
        self.session_id = session_id
        self.clock = clock
        self.origin_id = origin_id or generate_origin_id(clock)
        self.mirror = SessionMirror(store.reader(session_id))
        self.emitter = IntentEmitter(store.outbox(session_id), self.origin_id, clock)

    def connect(self) -> 'Controller':
        if not self.store.session_exists(self.session_id):
            raise SessionNotFound(self.session_id)
        self.mirror.start()
        self.store.touch_controller(self.session_id, self.origin_id)
        return self

    def disconnect(self) -> None:
        self.mirror.stop()

    @property
    def session(self) -> Optional[Session]:
        return self.mirror.session

    def select_preset(self, preset_id: str) -> str:
        session = self.mirror.session
        preset = session.config.preset(preset_id) if session else None
        if preset is None:
            raise KeyError(preset_id)
        return self.emitter.set_preset(preset)

    def view(self, now: Optional[int] = None) -> Optional[dict]:
        return self.mirror.view(self.clock() if now is None else now)
