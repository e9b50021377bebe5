import logging

import pytest

from clubtimer.store import SessionNotFound, StateWriter, CommandInbox, StoreError
from clubtimer.services.timer import commands as codec
from clubtimer.services.timer.authority import Authority
from clubtimer.services.timer.controller import Controller
from clubtimer.services.timer.processor import order_commands
from clubtimer.services.timer.state import Preset

CODE = 'TST234'


class RecordingWriter(StateWriter):
    def __init__(self, store, code, fail_times=0):
        super().__init__(store, code)
        self.patches = []
        self.fail_times = fail_times

    def patch_state(self, patch):
        if self.fail_times:
            self.fail_times -= 1
            raise StoreError('simulated write failure')
        self.patches.append(dict(patch))
        super().patch_state(patch)


class FlakyInbox(CommandInbox):
    def __init__(self, store, code, fail_times=0):
        super().__init__(store, code)
        self.fail_times = fail_times

    def delete(self, command_id):
        if self.fail_times:
            self.fail_times -= 1
            raise StoreError('simulated delete failure')
        return super().delete(command_id)


class InterruptingWriter(StateWriter):
    """Runs ``interrupt`` from inside the next beep write, before it commits."""

    def __init__(self, store, code):
        super().__init__(store, code)
        self.interrupt = None

    def patch_state(self, patch):
        if self.interrupt is not None and 'seq' not in patch:
            interrupt, self.interrupt = self.interrupt, None
            interrupt()
        super().patch_state(patch)


class VanishingWriter(StateWriter):
    """Sees the session once, then finds it deleted when subscribing."""

    def subscribe(self, on_change, on_error=None):
        self._store.delete_session(self.code)
        return super().subscribe(on_change, on_error)


def _queue(store, type_, payload=None, sent_at=0, origin='client-test'):
    return store.append_command(CODE, {'type': type_, 'payload': payload or {}, 'sentAtMs': sent_at, 'originId': origin})


def _preset_payload(preset_id, lower=60, mid=90, upper=120):
    return {'presetId': preset_id, 'lowerSec': lower, 'midSec': mid, 'upperSec': upper}


def test_order_commands_sorts_by_sent_time_then_id():
    batch = [{'id': 'b', 'sentAtMs': 5}, {'id': 'z', 'sentAtMs': 1}, {'id': 'a', 'sentAtMs': 3}, {'id': 'a2', 'sentAtMs': 5}]
    assert [r['id'] for r in order_commands(batch)] == ['z', 'a', 'a2', 'b']


def test_batch_is_applied_in_sent_order(session_store, room, clock):
    _queue(session_store, 'SET_PRESET', _preset_payload('five'), sent_at=5)
    _queue(session_store, 'SET_PRESET', _preset_payload('one'), sent_at=1)
    _queue(session_store, 'SET_PRESET', _preset_payload('three'), sent_at=3)

    authority = Authority(session_store, CODE, clock=clock)
    authority.writer = RecordingWriter(session_store, CODE)
    authority.start()

    assert [p['preset_id'] for p in authority.writer.patches] == ['one', 'three', 'five']
    state = session_store.get_session(CODE).state
    assert state.preset_id == 'five'
    assert state.seq == 3
    assert session_store.list_commands(CODE) == []


def test_redelivered_snapshot_is_not_reapplied(session_store, room, clock):
    _queue(session_store, 'SET_PRESET', _preset_payload('p'), sent_at=1)
    _queue(session_store, 'START', sent_at=2)
    snapshot = session_store.list_commands(CODE)

    authority = Authority(session_store, CODE, clock=clock).start()
    once = session_store.get_session(CODE).state
    assert once.status == 'running'

    clock.advance(30)
    authority.processor.handle_snapshot(snapshot)
    authority.processor.handle_snapshot(snapshot)
    assert session_store.get_session(CODE).state == once


def test_precondition_failure_is_a_silent_noop(session_store, room, clock):
    before = session_store.get_session(CODE).state
    authority = Authority(session_store, CODE, clock=clock).start()
    _queue(session_store, 'START', sent_at=1)
    _queue(session_store, 'STOP', sent_at=2)
    _queue(session_store, 'RESET', sent_at=3)

    assert session_store.get_session(CODE).state == before
    assert session_store.list_commands(CODE) == []
    assert len(authority.processor.applied) == 3


def test_malformed_command_is_dropped_without_state_change(session_store, room, clock):
    Authority(session_store, CODE, clock=clock).start()
    before = session_store.get_session(CODE).state
    _queue(session_store, 'SET_PRESET', {'presetId': 'bad', 'lowerSec': 90, 'midSec': 60, 'upperSec': 120}, sent_at=1)
    _queue(session_store, 'EXPLODE', {}, sent_at=2)

    assert session_store.get_session(CODE).state == before
    assert session_store.list_commands(CODE) == []


def test_failed_state_write_is_retried_on_next_delivery(session_store, room, clock):
    authority = Authority(session_store, CODE, clock=clock)
    authority.writer = RecordingWriter(session_store, CODE, fail_times=1)
    authority.start()

    first = _queue(session_store, 'SET_PRESET', _preset_payload('p'), sent_at=1)
    assert [c['id'] for c in session_store.list_commands(CODE)] == [first]
    assert session_store.get_session(CODE).state.status == 'idle'

    # Any later change re-delivers the whole pending set
    _queue(session_store, 'START', sent_at=2)
    state = session_store.get_session(CODE).state
    assert state.status == 'running'
    assert session_store.list_commands(CODE) == []


def test_failed_delete_is_retried_without_reapplying(session_store, room, clock):
    authority = Authority(session_store, CODE, clock=clock)
    authority.inbox = FlakyInbox(session_store, CODE, fail_times=1)
    authority.start()

    stuck = _queue(session_store, 'SET_PRESET', _preset_payload('p'), sent_at=1)
    assert [c['id'] for c in session_store.list_commands(CODE)] == [stuck]
    seq = session_store.get_session(CODE).state.seq
    assert seq == 1

    _queue(session_store, 'START', sent_at=2)
    assert session_store.list_commands(CODE) == []
    state = session_store.get_session(CODE).state
    assert state.status == 'running'
    assert state.seq == 2


def test_commands_wait_while_no_authority(session_store, room, clock):
    _queue(session_store, 'SET_PRESET', _preset_payload('p'), sent_at=1)
    assert session_store.get_session(CODE).state.status == 'idle'
    assert len(session_store.list_commands(CODE)) == 1


def test_authority_requires_existing_session(session_store, clock):
    with pytest.raises(SessionNotFound):
        Authority(session_store, 'NOPE22', clock=clock).start()


def test_session_deleted_is_terminal(session_store, room, clock):
    authority = Authority(session_store, CODE, clock=clock).start()
    controller = Controller(session_store, CODE, clock=clock).connect()
    session_store.delete_session(CODE)
    assert authority.lost and not authority.running
    assert controller.mirror.lost


def test_end_to_end_scenario(session_store, room, clock):
    authority = Authority(session_store, CODE, clock=clock).start()
    controller = Controller(session_store, CODE, clock=clock).connect()
    assert controller.session.state.status == 'idle'

    controller.emitter.set_preset(Preset('p_2_3', '2-3 min', 120, 150, 180))
    state = controller.session.state
    assert state.status == 'armed'
    assert (state.lower_sec, state.mid_sec, state.upper_sec) == (120, 150, 180)

    started = clock.ms
    controller.emitter.start()
    assert controller.session.state.status == 'running'
    assert controller.session.state.started_at_ms == started

    clock.advance(200)
    view = controller.view()
    assert view['zone'] == 'red'
    assert view['isOvertime'] is True
    # The authority computes the same values from its own mirror
    assert authority.session.state == controller.session.state

    controller.emitter.stop()
    assert controller.session.state.status == 'stopped'
    clock.advance(45)
    assert controller.view()['elapsedSec'] == 200

    controller.emitter.reset()
    state = controller.session.state
    assert state.status == 'idle'
    assert (state.preset_id, state.lower_sec, state.mid_sec, state.upper_sec) == (None, 0, 0, 0)
    assert state.started_at_ms is None
    assert session_store.list_commands(CODE) == []


def test_resume_after_stop_continues_clock(session_store, room, clock):
    Authority(session_store, CODE, clock=clock).start()
    controller = Controller(session_store, CODE, clock=clock).connect()
    controller.select_preset('p_1_2')
    controller.emitter.start()
    clock.advance(70)
    controller.emitter.stop()
    clock.advance(300)
    controller.emitter.start()
    assert controller.view()['elapsedSec'] == 70
    clock.advance(5)
    assert controller.view()['elapsedSec'] == 75


def test_update_config_patches_config_only(session_store, room, clock):
    Authority(session_store, CODE, clock=clock).start()
    controller = Controller(session_store, CODE, clock=clock).connect()
    before = controller.session.state
    controller.emitter.update_config(overtime_mode='repeatedly', show_timer=False)
    session = session_store.get_session(CODE)
    assert session.config.overtime_mode == 'repeatedly'
    assert session.config.show_timer is False
    assert session.state.status == before.status
    assert len(session.config.presets) == 6


def test_emitter_refuses_malformed_config(session_store, room, clock):
    controller = Controller(session_store, CODE, clock=clock).connect()
    with pytest.raises(codec.MalformedCommand):
        controller.emitter.update_config(overtime_mode='sometimes')
    assert session_store.list_commands(CODE) == []


def test_tick_beeps_once(session_store, room, clock):
    fired = []
    authority = Authority(session_store, CODE, clock=clock, on_beep=lambda s, e: fired.append(e)).start()
    controller = Controller(session_store, CODE, clock=clock).connect()
    controller.select_preset('p_1_2')
    controller.emitter.start()

    for _ in range(400):
        clock.advance(1)
        authority.tick()
    assert fired == [150]
    assert session_store.get_session(CODE).state.beeped is True


def test_tick_beeps_on_repeat_schedule(session_store, room, clock):
    fired = []
    authority = Authority(session_store, CODE, clock=clock, on_beep=lambda s, e: fired.append(e)).start()
    controller = Controller(session_store, CODE, clock=clock).connect()
    controller.emitter.update_config(overtime_mode='repeatedly')
    controller.select_preset('p_1_2')
    controller.emitter.start()

    for _ in range(600):
        clock.advance(1)
        authority.tick()
    assert fired == [150, 180, 240, 300]
    assert session_store.get_session(CODE).state.beep_count == 4


def test_restart_resets_beep_once(session_store, room, clock):
    fired = []
    authority = Authority(session_store, CODE, clock=clock, on_beep=lambda s, e: fired.append(e)).start()
    controller = Controller(session_store, CODE, clock=clock).connect()
    controller.select_preset('p_1_2')
    controller.emitter.start()
    clock.advance(150)
    assert authority.tick()
    controller.emitter.reset()
    controller.select_preset('p_1_2')
    controller.emitter.start()
    clock.advance(150)
    assert authority.tick()
    assert fired == [150, 150]


def test_failed_write_holds_back_later_commands(session_store, room, clock):
    first = _queue(session_store, 'SET_PRESET', _preset_payload('p'), sent_at=1)
    second = _queue(session_store, 'START', sent_at=2)

    authority = Authority(session_store, CODE, clock=clock)
    authority.writer = RecordingWriter(session_store, CODE, fail_times=1)
    authority.start()

    # START must not be judged against the state SET_PRESET never produced
    assert session_store.get_session(CODE).state.status == 'idle'
    assert [c['id'] for c in session_store.list_commands(CODE)] == [first, second]

    authority.processor.handle_snapshot(session_store.list_commands(CODE))
    state = session_store.get_session(CODE).state
    assert state.status == 'running'
    assert state.preset_id == 'p'
    assert [p['status'] for p in authority.writer.patches] == ['armed', 'running']
    assert session_store.list_commands(CODE) == []


def test_command_arriving_during_beep_write_is_applied_after_it(session_store, room, clock):
    authority = Authority(session_store, CODE, clock=clock)
    authority.writer = InterruptingWriter(session_store, CODE)
    authority.start()
    controller = Controller(session_store, CODE, clock=clock).connect()
    controller.select_preset('p_1_2')
    controller.emitter.start()

    clock.advance(150)
    authority.writer.interrupt = controller.emitter.reset
    assert authority.tick()

    state = session_store.get_session(CODE).state
    assert state.status == 'idle'
    assert state.beeped is False
    assert state.beep_count == 0
    assert authority.session.state == state
    assert session_store.list_commands(CODE) == []


def test_tick_waits_while_commands_are_being_applied(session_store, room, clock):
    authority = Authority(session_store, CODE, clock=clock).start()
    controller = Controller(session_store, CODE, clock=clock).connect()
    controller.select_preset('p_1_2')
    controller.emitter.start()
    clock.advance(150)

    with authority.processor.exclusive() as free:
        assert free
        assert authority.tick() is False
    assert authority.tick() is True


def test_stale_session_snapshot_does_not_roll_back_state(session_store, room, clock):
    authority = Authority(session_store, CODE, clock=clock).start()
    controller = Controller(session_store, CODE, clock=clock).connect()
    controller.select_preset('p_1_2')
    stale = session_store.get_session(CODE)
    controller.emitter.start()

    authority._on_session(stale)
    assert authority.session.state.status == 'running'

    controller.emitter.stop()
    assert session_store.get_session(CODE).state.status == 'stopped'


def test_session_vanishing_during_attach_is_terminal(session_store, room, clock, caplog):
    authority = Authority(session_store, CODE, clock=clock)
    authority.writer = VanishingWriter(session_store, CODE)
    with caplog.at_level(logging.INFO, logger='clubtimer.services.timer.authority'):
        authority.start()

    assert authority.lost
    assert not authority.running
    assert '[authority-attach]' not in caplog.text
