"""Values every observer recomputes locally from shared state and its own clock.

Nothing here touches the store or the network, so the authority and all
controllers agree on elapsed time, color and beep decisions without talking
to each other.
"""

from typing import Any, Dict, Optional

from .state import (
    ARMED,
    IDLE,
    OVERTIME_NONE,
    OVERTIME_ONCE,
    OVERTIME_REPEATEDLY,
    RUNNING,
    STOPPED,
    Session,
    TimerState,
)

NEUTRAL = 'neutral'
GREEN = 'green'
AMBER = 'amber'
RED = 'red'

# No alert fires until this far past the upper threshold, in any mode
OVERTIME_GRACE_SEC = 30
# Seconds past the upper threshold for each repeated alert
REPEAT_SCHEDULE_SEC = (30, 60, 120, 180)


def elapsed_seconds(started_at_ms: Optional[int], now_ms: int) -> int:
    if started_at_ms is None:
        return 0
    return (now_ms - started_at_ms) // 1000


def color_zone(elapsed: int, lower_sec: int, mid_sec: int, upper_sec: int) -> str:
    if elapsed < lower_sec:
        return NEUTRAL
    if elapsed < mid_sec:
        return GREEN
    if elapsed < upper_sec:
        return AMBER
    return RED


def is_overtime(elapsed: int, upper_sec: int) -> bool:
    return elapsed >= upper_sec


def overtime_seconds(elapsed: int, upper_sec: int) -> int:
    return max(0, elapsed - upper_sec)


def should_beep(elapsed: int, upper_sec: int, beeped: bool, beep_count: int, mode: str) -> bool:
    """Decide whether an overtime alert is due right now.

    ``once`` fires a single time per running session. ``repeatedly`` walks
    REPEAT_SCHEDULE_SEC, so the caller must record each firing (see
    ``beep_patch``) before the next entry can trigger.
    """
    if mode == OVERTIME_NONE:
        return False
    overtime = elapsed - upper_sec
    if overtime < OVERTIME_GRACE_SEC:
        return False
    if mode == OVERTIME_ONCE:
        return not beeped
    if mode == OVERTIME_REPEATEDLY:
        return beep_count < len(REPEAT_SCHEDULE_SEC) and overtime >= REPEAT_SCHEDULE_SEC[beep_count]
    return False


def beep_patch(state: TimerState) -> Dict[str, Any]:
    """State fields to record after an alert fired."""
    return {'beeped': True, 'beep_count': state.beep_count + 1}


def session_elapsed(state: TimerState, now_ms: int) -> int:
    """Elapsed seconds as shown for ``state``; frozen at the stop instant."""
    if state.status == RUNNING:
        return elapsed_seconds(state.started_at_ms, now_ms)
    if state.status == STOPPED:
        frozen_at = state.stopped_at_ms if state.stopped_at_ms is not None else now_ms
        return elapsed_seconds(state.started_at_ms, frozen_at)
    return 0


def display_zone(state: TimerState, now_ms: int) -> str:
    if state.status in (IDLE, ARMED):
        return NEUTRAL
    elapsed = session_elapsed(state, now_ms)
    return color_zone(elapsed, state.lower_sec, state.mid_sec, state.upper_sec)


def beep_due(session: Session, now_ms: int) -> bool:
    state = session.state
    if state.status != RUNNING:
        return False
    elapsed = session_elapsed(state, now_ms)
    return should_beep(elapsed, state.upper_sec, state.beeped, state.beep_count,
                       session.config.overtime_mode)


def format_time(seconds: int) -> str:
    sign = '-' if seconds < 0 else ''
    seconds = abs(int(seconds))
    return f'{sign}{seconds // 60:02d}:{seconds % 60:02d}'


def format_preset_range(lower_sec: int, upper_sec: int) -> str:
    return f'{lower_sec // 60}-{upper_sec // 60} min'


def status_text(state: TimerState) -> str:
    if state.status == IDLE:
        return 'Ready'
    if state.status == ARMED:
        return f'Set: {format_preset_range(state.lower_sec, state.upper_sec)}'
    if state.status == RUNNING:
        return 'Running'
    if state.status == STOPPED:
        return 'Stopped'
    return ''


def derived_view(session: Session, now_ms: int) -> Dict[str, Any]:
    state = session.state
    elapsed = session_elapsed(state, now_ms)
    overtime = state.status in (RUNNING, STOPPED) and is_overtime(elapsed, state.upper_sec)
    return {
        'elapsedSec': elapsed,
        'clock': format_time(elapsed),
        'zone': display_zone(state, now_ms),
        'isOvertime': overtime,
        'overtimeSec': overtime_seconds(elapsed, state.upper_sec) if overtime else 0,
        'statusText': status_text(state),
        'showTimer': session.config.show_timer,
    }
