"""Timer lifecycle: idle -> armed -> running <-> stopped, RESET back to idle.

``transition`` is total. Every (status, command) pair either yields a state
patch or None for a no-op; it never raises for an illegal pair.
"""

from typing import Any, Dict, Optional

from .commands import Payload, Reset, SetPreset, Start, Stop, UpdateConfig, type_of
from .state import ARMED, IDLE, RUNNING, STOPPED, TimerState

CLEARED = {
    'status': IDLE,
    'preset_id': None,
    'lower_sec': 0,
    'mid_sec': 0,
    'upper_sec': 0,
    'started_at_ms': None,
    'stopped_at_ms': None,
    'beeped': False,
    'beep_count': 0,
}


def transition(state: TimerState, payload: Payload, now_ms: int,
               resume_continues_elapsed: bool = True) -> Optional[Dict[str, Any]]:
    """Return the state fields ``payload`` changes, or None when it is a no-op."""
    status = state.status

    if isinstance(payload, SetPreset):
        if status not in (IDLE, ARMED):
            return None
        return {
            'status': ARMED,
            'preset_id': payload.preset_id,
            'lower_sec': payload.lower_sec,
            'mid_sec': payload.mid_sec,
            'upper_sec': payload.upper_sec,
            'started_at_ms': None,
            'stopped_at_ms': None,
            'beeped': False,
            'beep_count': 0,
        }

    if isinstance(payload, Start):
        if status == ARMED:
            return {
                'status': RUNNING,
                'started_at_ms': now_ms,
                'stopped_at_ms': None,
                'beeped': False,
                'beep_count': 0,
            }
        if status == STOPPED:
            return _resume(state, now_ms, resume_continues_elapsed)
        return None

    if isinstance(payload, Stop):
        if status != RUNNING:
            return None
        return {'status': STOPPED, 'stopped_at_ms': now_ms}

    if isinstance(payload, Reset):
        if status == IDLE:
            return None
        return dict(CLEARED)

    if isinstance(payload, UpdateConfig):
        return None

    raise TypeError(f'unhandled command {type_of(payload)}')


def _resume(state: TimerState, now_ms: int, continues: bool) -> Dict[str, Any]:
    if continues and state.started_at_ms is not None and state.stopped_at_ms is not None:
        # Shift the origin so the clock picks up where it froze
        frozen_ms = max(0, state.stopped_at_ms - state.started_at_ms)
        return {
            'status': RUNNING,
            'started_at_ms': now_ms - frozen_ms,
            'stopped_at_ms': None,
        }
    return {
        'status': RUNNING,
        'started_at_ms': now_ms,
        'stopped_at_ms': None,
        'beeped': False,
        'beep_count': 0,
    }


def config_patch(payload: Payload) -> Optional[Dict[str, Any]]:
    """Config fields changed by ``payload``; independent of timer status."""
    if isinstance(payload, UpdateConfig):
        return payload.patch() or None
    return None
