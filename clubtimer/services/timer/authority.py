"""The single process allowed to mutate a session's timer state."""

import logging
from dataclasses import replace
from typing import Callable, Optional

from clubtimer.store import SessionNotFound, SessionStore, StoreError
from .derived import beep_due, beep_patch, session_elapsed
from .processor import CommandProcessor
from .state import Session, now_ms as wall_clock_ms

logger = logging.getLogger(__name__)

CONNECTED = 'connected'
DISCONNECTED = 'disconnected'


class Authority:
    """Owns one mutable session handle and consumes its command queue.

    Only the authority holds a StateWriter and a CommandInbox for the
    session; controllers get a SessionReader and a CommandOutbox.
    """

    def __init__(self, store: SessionStore, session_id: str, clock: Callable[[], int] = wall_clock_ms,
                 resume_continues_elapsed: bool = True, on_beep: Optional[Callable[[Session, int], None]] = None):
        self.session_id = session_id
        self.writer = store.writer(session_id)
        self.inbox = store.inbox(session_id)
        self.clock = clock
        self.resume_continues_elapsed = resume_continues_elapsed
        self.on_beep = on_beep
        self.session: Optional[Session] = None
        self.connection = DISCONNECTED
        self.lost = False
        self.processor = CommandProcessor(self)
        self._unsubscribers = []

    def now_ms(self) -> int:
        return self.clock()

    @property
    def running(self) -> bool:
        return bool(self._unsubscribers)

    def start(self) -> 'Authority':
        session = self.writer.get()
        if session is None:
            raise SessionNotFound(self.session_id)
        self.session = session
        self.lost = False
        # Mirror first so the processor sees current state on the initial delivery
        self._unsubscribers.append(self.writer.subscribe(self._on_session, self._on_error))
        if self.lost:
            # Deleted between the read and the subscription
            self.stop()
            return self
        self._unsubscribers.append(self.inbox.subscribe(self._on_commands, self._on_error))
        logger.info(f"[authority-attach] session={self.session_id}")
        return self

    def stop(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()
        self.connection = DISCONNECTED
        logger.info(f"[authority-detach] session={self.session_id}")

    def _on_session(self, session: Optional[Session]) -> None:
        if session is None:
            # Deleted under us: terminal for this session, never recreated here
            logger.warning(f"[session-lost] session={self.session_id}")
            self.lost = True
            self.stop()
            return
        current = self.session
        if current is not None and session.state.revision() < current.state.revision():
            # Snapshot read before one of our own writes landed
            session = replace(session, state=current.state)
        self.session = session
        self.connection = CONNECTED

    def _on_commands(self, records) -> None:
        if self.session is None or self.lost:
            return
        self.connection = CONNECTED
        self.processor.handle_snapshot(records)

    def _on_error(self, exc: Exception) -> None:
        self.connection = DISCONNECTED
        logger.error(f"[subscription-error] session={self.session_id} error={exc}")

    def tick(self, now: Optional[int] = None) -> bool:
        """Evaluate the overtime alert against local time; True if one fired.

        Runs with queue processing held off, so a command can never land
        between the beep decision and its write. Skipped while another
        thread is applying commands; the next tick re-evaluates.
        """
        if self.session is None or self.lost:
            return False
        now = self.clock() if now is None else now
        with self.processor.exclusive() as free:
            if not free or self.lost or not beep_due(self.session, now):
                return False
            patch = beep_patch(self.session.state)
            try:
                self.writer.patch_state(patch)
            except StoreError as exc:
                logger.error(f"[beep-record-failed] session={self.session_id} error={exc}")
                return False
            self.session.state = self.session.state.merge(patch)
            session = self.session
            elapsed = session_elapsed(session.state, now)
        logger.info(f"[beep] session={self.session_id} elapsed={elapsed}s count={patch['beep_count']}")
        if self.on_beep is not None:
            self.on_beep(session, elapsed)
        return True
