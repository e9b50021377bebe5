"""Command queue consumption, run only inside the authority.

The store re-delivers the whole pending set on every change. Each delivery
is applied in ``(sentAtMs, id)`` order; ids already applied during this
process lifetime are never re-applied, only their deletion is retried.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Set

from clubtimer.store import StoreError
from . import commands as codec
from .machine import config_patch, transition

logger = logging.getLogger(__name__)


def _sort_key(record: Dict[str, Any]):
    sent_at = record.get('sentAtMs') if isinstance(record, dict) else None
    if isinstance(sent_at, bool) or not isinstance(sent_at, (int, float)):
        sent_at = 0
    command_id = record.get('id') if isinstance(record, dict) else None
    return (sent_at, str(command_id or ''))


def order_commands(records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Deterministic total order: sentAtMs ascending, command id breaks ties."""
    return sorted(records, key=_sort_key)


class CommandProcessor:
    """Applies queued commands to the session held by ``context``.

    ``context`` is the owning authority. It provides ``session`` (the
    mutable session handle), ``writer`` (a StateWriter), ``inbox`` (a
    CommandInbox), ``now_ms()`` and ``resume_continues_elapsed``.
    """

    def __init__(self, context):
        self.context = context
        self.applied: Set[str] = set()
        self._lock = threading.RLock()
        self._pending = None
        self._draining = False

    def handle_snapshot(self, records: List[Dict[str, Any]]) -> None:
        """Entry point for every command-queue delivery.

        Deletions made while draining trigger nested deliveries; those only
        replace the pending snapshot and are picked up by the running loop.
        """
        with self._lock:
            self._pending = list(records or ())
            if self._draining:
                return
            self._draining = True
        self._drain()

    @contextmanager
    def exclusive(self):
        """Run a block with queue processing held off.

        Yields False when commands are already being applied. Deliveries that
        arrive while the block runs are applied when it exits.
        """
        with self._lock:
            acquired = not self._draining
            if acquired:
                self._draining = True
        if not acquired:
            yield False
            return
        try:
            yield True
        finally:
            self._drain()

    def _drain(self) -> None:
        try:
            while True:
                with self._lock:
                    batch, self._pending = self._pending, None
                    if batch is None:
                        self._draining = False
                        return
                for record in order_commands(batch):
                    if not self._process(record):
                        # Later commands wait; the next delivery resumes here
                        break
        except BaseException:
            with self._lock:
                self._draining = False
            raise

    def _process(self, record: Dict[str, Any]) -> bool:
        """Apply one record. False when it must be retried before anything newer."""
        ctx = self.context
        command_id = record.get('id') if isinstance(record, dict) else None
        if not command_id:
            logger.warning(f"[command-rejected] session={ctx.session.id} reason=missing id record={record!r}")
            return True
        if command_id in self.applied:
            self._delete(command_id)
            return True

        try:
            command = codec.decode(record)
        except codec.MalformedCommand as exc:
            logger.warning(
                f"[command-rejected] session={ctx.session.id} id={command_id} type={record.get('type')} "
                f"origin={record.get('originId')} reason={exc}"
            )
            self.applied.add(command_id)
            self._delete(command_id)
            return True

        session = ctx.session
        state_changes = transition(session.state, command.payload, ctx.now_ms(),
                                   resume_continues_elapsed=ctx.resume_continues_elapsed)
        config_changes = config_patch(command.payload)

        if state_changes is None and config_changes is None:
            logger.debug(f"[command-noop] session={session.id} id={command.id} type={command.type} status={session.state.status}")
        try:
            if state_changes is not None:
                state_changes['seq'] = session.state.seq + 1
                ctx.writer.patch_state(state_changes)
                ctx.session.state = ctx.session.state.merge(state_changes)
            if config_changes is not None:
                ctx.writer.patch_config(config_changes)
                ctx.session.config = ctx.session.config.merge(config_changes)
        except StoreError as exc:
            # Left pending and unmarked; the next delivery retries it
            logger.error(f"[state-write-failed] session={session.id} id={command.id} type={command.type} error={exc}")
            return False

        if state_changes is not None or config_changes is not None:
            logger.info(
                f"[command-apply] session={session.id} id={command.id} type={command.type} "
                f"origin={command.origin_id} status={ctx.session.state.status} seq={ctx.session.state.seq}"
            )
        self.applied.add(command.id)
        self._delete(command.id)
        return True

    def _delete(self, command_id: str) -> None:
        try:
            self.context.inbox.delete(command_id)
        except StoreError as exc:
            logger.error(f"[command-delete-failed] session={self.context.session.id} id={command_id} error={exc}")
