"""Command records: one payload variant per command type.

Wire shape of a queued command::

    {'id': ..., 'type': 'SET_PRESET', 'payload': {...},
     'sentAtMs': 1700000000000, 'originId': 'client-...'}

``decode`` is the only way a record reaches the state machine; anything
that does not match its declared type exactly raises MalformedCommand.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .state import OVERTIME_MODES, Preset, validate_thresholds

SET_PRESET = 'SET_PRESET'
START = 'START'
STOP = 'STOP'
RESET = 'RESET'
UPDATE_CONFIG = 'UPDATE_CONFIG'
COMMAND_TYPES = (SET_PRESET, START, STOP, RESET, UPDATE_CONFIG)


class MalformedCommand(ValueError):
    pass


@dataclass(frozen=True)
class SetPreset:
    preset_id: str
    lower_sec: int
    mid_sec: int
    upper_sec: int


@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class UpdateConfig:
    show_timer: Optional[bool] = None
    overtime_mode: Optional[str] = None
    presets: Optional[tuple] = None

    def patch(self) -> Dict[str, Any]:
        """Only the fields the sender actually provided."""
        out = {}
        if self.show_timer is not None:
            out['show_timer'] = self.show_timer
        if self.overtime_mode is not None:
            out['overtime_mode'] = self.overtime_mode
        if self.presets is not None:
            out['presets'] = self.presets
        return out


Payload = Union[SetPreset, Start, Stop, Reset, UpdateConfig]


@dataclass(frozen=True)
class Command:
    id: str
    payload: Payload
    sent_at_ms: int
    origin_id: str

    @property
    def type(self) -> str:
        return type_of(self.payload)


def type_of(payload: Payload) -> str:
    if isinstance(payload, SetPreset):
        return SET_PRESET
    if isinstance(payload, Start):
        return START
    if isinstance(payload, Stop):
        return STOP
    if isinstance(payload, Reset):
        return RESET
    if isinstance(payload, UpdateConfig):
        return UPDATE_CONFIG
    raise TypeError(f'not a command payload: {payload!r}')


def _only_keys(data: Dict[str, Any], allowed, kind: str) -> None:
    extra = set(data) - set(allowed)
    if extra:
        raise MalformedCommand(f'{kind} payload has unexpected fields: {sorted(extra)}')


def _decode_set_preset(data: Dict[str, Any]) -> SetPreset:
    keys = ('presetId', 'lowerSec', 'midSec', 'upperSec')
    _only_keys(data, keys, SET_PRESET)
    missing = [k for k in keys if k not in data]
    if missing:
        raise MalformedCommand(f'SET_PRESET payload missing {missing}')
    preset_id = data['presetId']
    if not isinstance(preset_id, str) or not preset_id:
        raise MalformedCommand('presetId must be a non-empty string')
    try:
        validate_thresholds(data['lowerSec'], data['midSec'], data['upperSec'])
    except ValueError as exc:
        raise MalformedCommand(str(exc)) from exc
    return SetPreset(preset_id, data['lowerSec'], data['midSec'], data['upperSec'])


def _decode_update_config(data: Dict[str, Any]) -> UpdateConfig:
    _only_keys(data, ('showTimer', 'overtimeMode', 'presets'), UPDATE_CONFIG)
    show_timer = data.get('showTimer')
    if show_timer is not None and not isinstance(show_timer, bool):
        raise MalformedCommand('showTimer must be a boolean')
    mode = data.get('overtimeMode')
    if mode is not None and mode not in OVERTIME_MODES:
        raise MalformedCommand(f'overtimeMode must be one of {OVERTIME_MODES}')
    presets = data.get('presets')
    if presets is not None:
        if not isinstance(presets, list):
            raise MalformedCommand('presets must be a list')
        try:
            presets = tuple(Preset.from_dict(p) for p in presets)
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            raise MalformedCommand(f'invalid preset: {exc}') from exc
        ids = [p.id for p in presets]
        if len(ids) != len(set(ids)):
            raise MalformedCommand('preset ids must be unique')
    return UpdateConfig(show_timer=show_timer, overtime_mode=mode, presets=presets)


def decode_payload(command_type: str, data: Any) -> Payload:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedCommand('payload must be an object')
    if command_type == SET_PRESET:
        return _decode_set_preset(data)
    if command_type == START:
        _only_keys(data, (), START)
        return Start()
    if command_type == STOP:
        _only_keys(data, (), STOP)
        return Stop()
    if command_type == RESET:
        _only_keys(data, (), RESET)
        return Reset()
    if command_type == UPDATE_CONFIG:
        return _decode_update_config(data)
    raise MalformedCommand(f'unknown command type: {command_type!r}')


def decode(record: Dict[str, Any]) -> Command:
    """Build a Command from a queued record, failing closed on any anomaly."""
    if not isinstance(record, dict):
        raise MalformedCommand('command record must be an object')
    command_id = record.get('id')
    if not command_id or not isinstance(command_id, str):
        raise MalformedCommand('command id missing')
    sent_at = record.get('sentAtMs')
    if isinstance(sent_at, bool) or not isinstance(sent_at, (int, float)) or sent_at < 0:
        raise MalformedCommand('sentAtMs must be a non-negative number')
    origin_id = record.get('originId')
    if origin_id is not None and not isinstance(origin_id, str):
        raise MalformedCommand('originId must be a string')
    payload = decode_payload(record.get('type'), record.get('payload'))
    return Command(id=command_id, payload=payload, sent_at_ms=int(sent_at), origin_id=origin_id or '')


def encode_payload(payload: Payload) -> Dict[str, Any]:
    if isinstance(payload, SetPreset):
        return {
            'presetId': payload.preset_id,
            'lowerSec': payload.lower_sec,
            'midSec': payload.mid_sec,
            'upperSec': payload.upper_sec,
        }
    if isinstance(payload, UpdateConfig):
        out = {}
        if payload.show_timer is not None:
            out['showTimer'] = payload.show_timer
        if payload.overtime_mode is not None:
            out['overtimeMode'] = payload.overtime_mode
        if payload.presets is not None:
            out['presets'] = [p.to_dict() for p in payload.presets]
        return out
    type_of(payload)
    return {}


def encode(payload: Payload, sent_at_ms: int, origin_id: str) -> Dict[str, Any]:
    """Queue record for a new command; the store assigns the id."""
    return {
        'type': type_of(payload),
        'payload': encode_payload(payload),
        'sentAtMs': int(sent_at_ms),
        'originId': origin_id,
    }
