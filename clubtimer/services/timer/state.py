"""Session document types shared by the authority and every controller.

Internally everything is snake_case; ``to_dict``/``from_dict`` translate to
the camelCase document stored and broadcast to clients.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

IDLE = 'idle'
ARMED = 'armed'
RUNNING = 'running'
STOPPED = 'stopped'
STATUSES = (IDLE, ARMED, RUNNING, STOPPED)

OVERTIME_NONE = 'none'
OVERTIME_ONCE = 'once'
OVERTIME_REPEATEDLY = 'repeatedly'
OVERTIME_MODES = (OVERTIME_NONE, OVERTIME_ONCE, OVERTIME_REPEATEDLY)


def now_ms() -> int:
    return int(time.time() * 1000)


def validate_thresholds(lower_sec, mid_sec, upper_sec) -> None:
    """Raise ValueError unless the thresholds are non-negative ints in order."""
    for name, value in (('lowerSec', lower_sec), ('midSec', mid_sec), ('upperSec', upper_sec)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f'{name} must be an integer')
        if value < 0:
            raise ValueError(f'{name} must be >= 0')
    if not (lower_sec <= mid_sec <= upper_sec):
        raise ValueError('thresholds must satisfy lowerSec <= midSec <= upperSec')


@dataclass(frozen=True)
class Preset:
    id: str
    label: str
    lower_sec: int
    mid_sec: int
    upper_sec: int

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id:
            raise ValueError('preset id must be a non-empty string')
        validate_thresholds(self.lower_sec, self.mid_sec, self.upper_sec)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'label': self.label,
            'lowerSec': self.lower_sec,
            'midSec': self.mid_sec,
            'upperSec': self.upper_sec,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Preset':
        return cls(
            id=data['id'],
            label=data.get('label') or data['id'],
            lower_sec=data['lowerSec'],
            mid_sec=data['midSec'],
            upper_sec=data['upperSec'],
        )


DEFAULT_PRESETS = (
    Preset('p_1_2', '1-2 min', 60, 90, 120),
    Preset('p_2_3', '2-3 min', 120, 150, 180),
    Preset('p_4_5', '4-5 min', 240, 270, 300),
    Preset('p_5_6', '5-6 min', 300, 330, 360),
    Preset('p_5_7', '5-7 min', 300, 360, 420),
    Preset('p_7_9', '7-9 min', 420, 480, 540),
)


@dataclass(frozen=True)
class SessionConfig:
    presets: tuple = DEFAULT_PRESETS
    show_timer: bool = True
    overtime_mode: str = OVERTIME_ONCE

    def preset(self, preset_id: str) -> Optional[Preset]:
        for p in self.presets:
            if p.id == preset_id:
                return p
        return None

    def merge(self, patch: Dict[str, Any]) -> 'SessionConfig':
        return replace(self, **patch)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'presets': [p.to_dict() for p in self.presets],
            'showTimer': self.show_timer,
            'overtimeMode': self.overtime_mode,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SessionConfig':
        data = data or {}
        presets = data.get('presets')
        return cls(
            presets=tuple(Preset.from_dict(p) for p in presets) if presets is not None else DEFAULT_PRESETS,
            show_timer=bool(data.get('showTimer', True)),
            overtime_mode=data.get('overtimeMode') or OVERTIME_ONCE,
        )


@dataclass(frozen=True)
class TimerState:
    status: str = IDLE
    preset_id: Optional[str] = None
    lower_sec: int = 0
    mid_sec: int = 0
    upper_sec: int = 0
    started_at_ms: Optional[int] = None
    stopped_at_ms: Optional[int] = None
    beeped: bool = False
    beep_count: int = 0
    seq: int = 0

    def merge(self, patch: Dict[str, Any]) -> 'TimerState':
        return replace(self, **patch)

    def revision(self) -> tuple:
        """Orders writes by the authority: applied commands bump seq, beeps bump beep_count."""
        return (self.seq, self.beep_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'presetId': self.preset_id,
            'lowerSec': self.lower_sec,
            'midSec': self.mid_sec,
            'upperSec': self.upper_sec,
            'startedAtMs': self.started_at_ms,
            'stoppedAtMs': self.stopped_at_ms,
            'beeped': self.beeped,
            'beepCount': self.beep_count,
            'seq': self.seq,
        }


# Field names of TimerState as written to the store, keyed by attribute
STATE_FIELDS = {
    'status': 'status',
    'preset_id': 'presetId',
    'lower_sec': 'lowerSec',
    'mid_sec': 'midSec',
    'upper_sec': 'upperSec',
    'started_at_ms': 'startedAtMs',
    'stopped_at_ms': 'stoppedAtMs',
    'beeped': 'beeped',
    'beep_count': 'beepCount',
    'seq': 'seq',
}

CONFIG_FIELDS = {
    'presets': 'presets',
    'show_timer': 'showTimer',
    'overtime_mode': 'overtimeMode',
}


@dataclass(frozen=True)
class ControllerInfo:
    client_id: Optional[str] = None
    last_seen_at: Optional[int] = None


@dataclass
class Session:
    """One timer room: the mutable handle owned by an authority, or a
    controller's read-only mirror of it."""
    id: str
    config: SessionConfig = field(default_factory=SessionConfig)
    state: TimerState = field(default_factory=TimerState)
    title: str = ''
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    controller: ControllerInfo = field(default_factory=ControllerInfo)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'config': self.config.to_dict(),
            'state': self.state.to_dict(),
            'controller': {
                'clientId': self.controller.client_id,
                'lastSeenAt': self.controller.last_seen_at,
            },
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
        }
