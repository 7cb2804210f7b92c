"""Tests for Hold/Unhold and Start/End command handling."""

from unittest.mock import MagicMock

import pytest

from oee_engine.commands import CommandResult, CommandStateMachine
from oee_engine.errors import OrderStateError, ReferenceDataError
from oee_engine.models import PLACEHOLDER_REASON, DowntimeKind, OrderStatus
from oee_engine.reference import CachedReferenceData, StaticReferenceData

from conftest import BASE, make_order


class TestHoldUnhold:
    """Tests for the Running/Held state machine."""

    @pytest.fixture
    def reference(self, machine):
        return StaticReferenceData(machines=[machine], orders=[make_order()])

    @pytest.fixture
    def commands(self, reference, clock):
        return CommandStateMachine(reference, threshold_seconds=300, clock=clock)

    def microstops(self, reference):
        return reference.get_downtime_intervals(DowntimeKind.MICROSTOP, "M1")

    def test_hold_marks_machine_held(self, commands, clock):
        outcome = commands.handle("M1", "Hold", 1)

        assert outcome.result == CommandResult.HOLD_STARTED
        assert commands.is_held("M1")
        assert commands.holds["M1"].started_at == clock.now
        assert commands.holds["M1"].order_id == "1"

    def test_short_hold_records_nothing(self, commands, reference, clock):
        commands.handle("M1", "Hold", 1)
        clock.advance(seconds=120)
        outcome = commands.handle("M1", "Unhold", 1)

        assert outcome.result == CommandResult.RESUMED
        assert not outcome.requires_recompute
        assert not commands.is_held("M1")
        assert self.microstops(reference) == []

    def test_idle_exactly_at_threshold_records_nothing(self, commands, reference, clock):
        commands.handle("M1", "Hold", 1)
        clock.advance(seconds=300)
        outcome = commands.handle("M1", "Unhold", 1)

        assert outcome.result == CommandResult.RESUMED
        assert self.microstops(reference) == []

    def test_long_hold_records_one_microstop(self, commands, reference, clock):
        held_at = clock.now
        commands.handle("M1", "Hold", 1)
        clock.advance(seconds=301)
        outcome = commands.handle("M1", "Unhold", 1)

        assert outcome.result == CommandResult.MICROSTOP_RECORDED
        assert outcome.requires_recompute
        records = self.microstops(reference)
        assert len(records) == 1
        assert records[0] is outcome.downtime
        assert records[0].start == held_at
        assert records[0].end == clock.now
        assert records[0].duration_seconds == 301
        assert records[0].reason == PLACEHOLDER_REASON
        assert records[0].order_id == "1"

    def test_second_hold_keeps_first_start(self, commands, clock):
        first = clock.now
        commands.handle("M1", "Hold", 1)
        clock.advance(seconds=30)
        outcome = commands.handle("M1", "Hold", 1)

        assert outcome.result == CommandResult.ALREADY_HELD
        assert commands.holds["M1"].started_at == first

    def test_unhold_without_hold(self, commands, reference):
        outcome = commands.handle("M1", "Unhold", 1)

        assert outcome.result == CommandResult.NOT_HELD
        assert self.microstops(reference) == []

    @pytest.mark.parametrize("value", [0, 2, "yes", None])
    def test_values_other_than_one_are_ignored(self, commands, value):
        outcome = commands.handle("M1", "Hold", value)

        assert outcome.result == CommandResult.IGNORED_VALUE
        assert not commands.is_held("M1")

    def test_unhold_with_zero_keeps_hold(self, commands):
        commands.handle("M1", "Hold", 1)
        outcome = commands.handle("M1", "Unhold", 0)

        assert outcome.result == CommandResult.IGNORED_VALUE
        assert commands.is_held("M1")

    def test_holds_are_per_machine(self, commands, reference, clock):
        commands.handle("M1", "Hold", 1)
        commands.handle("M2", "Hold", 1)
        clock.advance(seconds=600)
        commands.handle("M2", "Unhold", 1)

        assert commands.is_held("M1")
        assert not commands.is_held("M2")
        assert reference.get_downtime_intervals(DowntimeKind.MICROSTOP, "M2")[0].order_id is None

    def test_hold_state_lives_in_shared_store(self, reference, clock):
        holds = {}
        commands = CommandStateMachine(reference, holds=holds, clock=clock)
        commands.handle("M1", "Hold", 1)

        assert "M1" in holds

    def test_unknown_command(self, commands):
        outcome = commands.handle("M1", "Pause", 1)

        assert outcome.result == CommandResult.UNKNOWN_COMMAND
        assert not outcome.requires_recompute


class TestStartEnd:
    """Tests for order Start/End commands."""

    @pytest.fixture
    def order(self):
        return make_order()

    @pytest.fixture
    def reference(self, machine, order):
        return StaticReferenceData(machines=[machine], orders=[order])

    @pytest.fixture
    def commands(self, reference, clock):
        return CommandStateMachine(reference, clock=clock)

    def test_start_marks_order_running(self, commands, reference, clock):
        outcome = commands.handle("M1", "Start", 0)

        assert outcome.result == CommandResult.ORDER_STARTED
        assert outcome.requires_recompute
        assert outcome.order.actual_start == clock.now
        assert outcome.order.status == OrderStatus.RUNNING
        assert reference.get_active_order("M1") is outcome.order

    def test_end_finishes_order(self, commands, reference, order, clock):
        commands.handle("M1", "Start", 1)
        clock.advance(minutes=90)
        outcome = commands.handle("M1", "End", 1)

        assert outcome.result == CommandResult.ORDER_ENDED
        assert outcome.order_finished
        assert outcome.order.order_id == order.order_id
        assert outcome.order.actual_end == clock.now
        assert outcome.order.status == OrderStatus.FINISHED
        assert reference.get_active_order("M1") is None

    def test_end_without_start_raises(self, commands):
        with pytest.raises(OrderStateError):
            commands.handle("M1", "End", 1)

    def test_start_without_order(self, commands):
        outcome = commands.handle("M9", "Start", 1)

        assert outcome.result == CommandResult.NO_ORDER

    def test_rejected_start_leaves_order_released(self, commands, reference, order):
        reference.update_order = MagicMock(side_effect=ReferenceDataError("HTTP 500"))

        outcome = commands.handle("M1", "Start", 1)

        assert outcome.result == CommandResult.FAILED
        assert order.status == OrderStatus.RELEASED
        assert order.actual_start is None

    def test_rejected_end_leaves_cached_order_running(self, machine, clock):
        inner = StaticReferenceData(
            machines=[machine],
            orders=[make_order(actual_start=BASE, status=OrderStatus.RUNNING)],
        )
        reference = CachedReferenceData(inner)
        commands = CommandStateMachine(reference, clock=clock)
        cached = reference.get_active_order("M1")
        inner.update_order = MagicMock(side_effect=ReferenceDataError("HTTP 500"))
        clock.advance(minutes=60)

        outcome = commands.handle("M1", "End", 1)

        assert outcome.result == CommandResult.FAILED
        assert cached.status == OrderStatus.RUNNING
        assert cached.actual_end is None
        reloaded = reference.get_active_order("M1")
        assert not reloaded.is_terminal
        assert reference.misses == 2

    def test_reference_failure_is_reported(self, clock):
        reference = MagicMock()
        reference.get_active_order.side_effect = ReferenceDataError("API down")
        commands = CommandStateMachine(reference, clock=clock)

        outcome = commands.handle("M1", "Start", 1)

        assert outcome.result == CommandResult.FAILED

    def test_hold_survives_unreachable_reference(self, clock):
        reference = MagicMock()
        reference.get_active_order.side_effect = ReferenceDataError("API down")
        commands = CommandStateMachine(reference, clock=clock)

        outcome = commands.handle("M1", "Hold", 1)

        assert outcome.result == CommandResult.HOLD_STARTED
        assert commands.holds["M1"].order_id is None
