"""Tests for the engine coordinator and per-machine dispatcher."""

import threading
from unittest.mock import MagicMock

import pytest

from oee_engine.commands import CommandResult
from oee_engine.config import Config
from oee_engine.engine import MachineDispatcher, OEEEngine
from oee_engine.errors import MetricsUnavailableError, ReferenceDataError
from oee_engine.historian import JsonLinesHistorian
from oee_engine.models import OrderStatus
from oee_engine.payload import Metric, encode_payload
from oee_engine.reference import CachedReferenceData, StaticReferenceData
from oee_engine.router import RouteResult

from conftest import BASE, make_order

DATA_TOPIC = "spBv1.0/Plant1/Area1/DDATA/Line1/ActualProductionQuantity"
HOLD_TOPIC = "spBv1.0/Plant1/Area1/DCMD/Line1/Hold"


class TestMachineDispatcher:
    """Tests for MachineDispatcher."""

    @pytest.fixture
    def dispatcher(self):
        dispatcher = MachineDispatcher()
        yield dispatcher
        dispatcher.stop()

    def test_same_machine_runs_in_order(self, dispatcher):
        seen = []
        for i in range(50):
            dispatcher.submit("M1", seen.append, i)
        dispatcher.join()

        assert seen == list(range(50))
        assert dispatcher.tasks_done == 50

    def test_one_worker_per_machine(self, dispatcher):
        names = set()

        def record():
            names.add(threading.current_thread().name)

        dispatcher.submit("M1", record)
        dispatcher.submit("M2", record)
        dispatcher.join()

        assert sorted(dispatcher.machines) == ["M1", "M2"]
        assert names == {"oee-worker-M1", "oee-worker-M2"}

    def test_failing_task_does_not_stop_worker(self, dispatcher):
        seen = []

        def explode():
            raise RuntimeError("boom")

        dispatcher.submit("M1", explode)
        dispatcher.submit("M1", seen.append, "after")
        dispatcher.join()

        assert seen == ["after"]
        assert dispatcher.tasks_failed == 1

    def test_counters_across_workers(self, dispatcher):
        def explode():
            raise RuntimeError("boom")

        for i in range(200):
            dispatcher.submit(f"M{i % 4}", explode if i % 10 == 0 else (lambda: None))
        dispatcher.join()

        assert dispatcher.tasks_done == 180
        assert dispatcher.tasks_failed == 20

    def test_submit_after_stop_is_dropped(self, dispatcher):
        seen = []
        dispatcher.stop()
        dispatcher.submit("M1", seen.append, 1)

        assert dispatcher.machines == []
        assert seen == []


class TestOEEEngine:
    """Tests for the end-to-end engine flow."""

    @pytest.fixture
    def order(self):
        return make_order(minutes=210, quantity=210)

    @pytest.fixture
    def reference(self, machine, order):
        return StaticReferenceData(machines=[machine], orders=[order])

    @pytest.fixture
    def historian(self, tmp_path):
        return JsonLinesHistorian(tmp_path / "history.jsonl")

    @pytest.fixture
    def engine(self, reference, historian, clock):
        engine = OEEEngine(Config.default(), reference, historian=historian, clock=clock, sleep=MagicMock())
        yield engine
        engine.stop()

    def test_get_metrics_before_compute_raises(self, engine):
        with pytest.raises(MetricsUnavailableError):
            engine.get_metrics("M1")

    def test_telemetry_updates_metrics(self, engine):
        payload = encode_payload(
            [
                Metric("ActualProductionQuantity", 100, "Int32"),
                Metric("ActualProductionYield", 95, "Int32"),
            ]
        )

        assert engine.handle_message(DATA_TOPIC, payload) == RouteResult.ROUTED_METRIC
        engine.join()

        metrics = engine.get_metrics("M1")
        assert metrics.quality == 95.0
        assert metrics.availability == 100
        assert metrics.plant == "Plant1"
        assert engine.snapshots["M1"] is metrics

    def test_unchanged_values_do_not_recompute(self, engine):
        metrics = [Metric("ActualProductionQuantity", 10)]

        assert engine.handle_metrics("M1", metrics)
        assert not engine.handle_metrics("M1", metrics)
        assert engine.computations == 1

    def test_static_metrics_come_from_order(self, engine):
        engine.handle_metrics("M1", [Metric("ActualProductionQuantity", 10)])

        assert engine.buffers["M1"]["plannedProductionQuantity"].value == 210

    def test_subscriber_sees_snapshot(self, engine):
        callback = engine.publisher.subscribe(MagicMock())
        engine.handle_metrics("M1", [Metric("ActualProductionQuantity", 10)])

        callback.assert_called_once_with("M1", engine.get_metrics("M1"))

    def test_long_hold_adds_microstop(self, engine, reference, clock):
        assert engine.handle_message(HOLD_TOPIC, encode_payload([Metric("Hold", 1)])) == RouteResult.ROUTED_COMMAND
        engine.join()
        clock.advance(seconds=400)
        outcome = engine.handle_command("M1", "Unhold", 1)

        assert outcome.result == CommandResult.MICROSTOP_RECORDED
        assert engine.get_metrics("M1").microstop_duration == pytest.approx(400 / 60)
        assert len(reference.get_microstops("M1")) == 1

    def test_order_end_persists_once(self, engine, historian, order, clock):
        engine.handle_command("M1", "Start", 1)
        clock.advance(minutes=60)
        outcome = engine.handle_command("M1", "End", 1)

        assert outcome.result == CommandResult.ORDER_ENDED
        metrics = engine.get_metrics("M1")
        assert metrics.is_terminal
        assert metrics.runtime == 60

        engine.recompute("M1", outcome.order)
        records = historian.read_all()
        assert len(records) == 1
        assert records[0].order_id == order.order_id

    def test_rejected_end_is_not_persisted(self, machine, historian, clock):
        inner = StaticReferenceData(
            machines=[machine],
            orders=[make_order(actual_start=BASE, status=OrderStatus.RUNNING)],
        )
        reference = CachedReferenceData(inner)
        engine = OEEEngine(Config.default(), reference, historian=historian, clock=clock, sleep=MagicMock())
        reference.get_active_order("M1")
        inner.update_order = MagicMock(side_effect=ReferenceDataError("HTTP 500"))
        clock.advance(minutes=60)

        assert engine.handle_command("M1", "End", 1).result == CommandResult.FAILED
        engine.handle_metrics("M1", [Metric("ActualProductionQuantity", 50)])

        assert not engine.get_metrics("M1").is_terminal
        assert historian.read_all() == []
        engine.stop()

    def test_end_without_start_fails(self, engine, historian, order):
        outcome = engine.handle_command("M1", "End", 1)

        assert outcome.result == CommandResult.FAILED
        assert order.status == OrderStatus.RELEASED
        assert historian.read_all() == []

    def test_order_change_resets_buffer(self, engine, reference, order):
        engine.handle_metrics("M1", [Metric("ActualProductionQuantity", 50)])
        order.status = OrderStatus.FINISHED
        reference.update_order(make_order(order_id="2", quantity=100))

        engine.handle_metrics("M1", [Metric("ActualProductionYield", 5)])

        assert engine.tracked_orders["M1"] == "2"
        assert "ActualProductionQuantity" not in engine.buffers["M1"]
        assert engine.buffers["M1"]["plannedProductionQuantity"].value == 100

    def test_computation_error_is_contained(self, machine, clock):
        reference = StaticReferenceData(machines=[machine], orders=[make_order(quantity=0)])
        engine = OEEEngine(Config.default(), reference, clock=clock, sleep=MagicMock())

        engine.handle_metrics("M1", [Metric("ActualProductionQuantity", 5)])

        assert engine.computation_errors == 1
        with pytest.raises(MetricsUnavailableError):
            engine.get_metrics("M1")
        engine.stop()

    def test_reference_outage_is_retried_then_skipped(self, clock):
        reference = MagicMock()
        reference.get_active_order.side_effect = ReferenceDataError("API down")
        sleep = MagicMock()
        config = Config.default()
        config.reference.connect_retries = 3
        engine = OEEEngine(config, reference, clock=clock, sleep=sleep)

        assert not engine.handle_metrics("M1", [Metric("ActualProductionQuantity", 5)])
        assert reference.get_active_order.call_count == 3
        assert sleep.call_count == 2
        engine.stop()
