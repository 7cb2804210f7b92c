"""Tests for the OEE calculator."""

import random
from datetime import timedelta

import pytest

from oee_engine.calculator import (
    AVERAGE,
    BELOW_AVERAGE,
    CLASSIFICATION_TIERS,
    EXCELLENT,
    GOOD,
    WORLD_CLASS,
    OEECalculator,
    OrderPhase,
    availability,
    classify,
    format_metrics_table,
    oee,
    performance,
    quality,
    takt_figures,
)
from oee_engine.config import ClassificationLevels, OEEConfig
from oee_engine.errors import ComputationError, MetricsUnavailableError
from oee_engine.models import MetricSource, MetricValue, OrderStatus
from oee_engine.timewindows import WindowBreakdown, resolve_order_window

from conftest import BASE, FakeClock, make_order


def breakdown_for(order, unplanned=0.0, planned=0.0):
    start, end = resolve_order_window(order)
    return WindowBreakdown(start, end, planned_downtime=planned, unplanned_downtime=unplanned)


def buffered(**values):
    return {name: MetricValue(value, MetricSource.MQTT) for name, value in values.items()}


class TestRatios:
    """Tests for the ratio functions."""

    def test_availability_without_downtime(self):
        assert availability(210, 0) == 100

    def test_availability_with_unplanned_downtime(self):
        assert availability(200, 50) == 75

    def test_availability_zero_runtime(self):
        assert availability(0, 0) == 0

    def test_performance(self):
        assert performance(1.0, 1.25) == 80

    def test_performance_undefined_actual_takt(self):
        assert performance(1.0, None) == 0
        assert performance(1.0, 0) == 0
        assert performance(0, 1.0) == 0

    def test_quality(self):
        assert quality(950, 1000) == 95.0

    def test_quality_nothing_produced(self):
        assert quality(0, 0) == 0

    def test_oee_is_product_of_ratios(self):
        rng = random.Random(11)
        for _ in range(200):
            a, p, q = (rng.uniform(0, 100) for _ in range(3))
            assert oee(a, p, q) == a * p * q / 10000


class TestClassification:
    """Tests for classify."""

    @pytest.mark.parametrize(
        "value,label",
        [
            (100, WORLD_CLASS),
            (85, WORLD_CLASS),
            (84.99, EXCELLENT),
            (75, EXCELLENT),
            (65, GOOD),
            (55, AVERAGE),
            (54.99, BELOW_AVERAGE),
            (0, BELOW_AVERAGE),
        ],
    )
    def test_default_levels(self, value, label):
        assert classify(value) == label

    def test_custom_levels(self):
        levels = ClassificationLevels(world_class=90, excellent=80, good=70, average=60)
        assert classify(85, levels) == EXCELLENT

    def test_classification_is_monotonic(self):
        rng = random.Random(5)
        values = sorted(rng.uniform(0, 100) for _ in range(500))
        tiers = [CLASSIFICATION_TIERS.index(classify(v)) for v in values]
        assert tiers == sorted(tiers)


class TestTaktFigures:
    """Tests for the phase-specific takt formulas."""

    def test_phase_selection(self):
        assert OrderPhase.of(make_order()) == OrderPhase.NOT_STARTED
        started = make_order(actual_start=BASE)
        assert OrderPhase.of(started) == OrderPhase.STARTED
        ended = make_order(actual_start=BASE, actual_end=BASE + timedelta(hours=1))
        assert OrderPhase.of(ended) == OrderPhase.ENDED

    def test_not_started(self):
        order = make_order(minutes=210, quantity=210)
        figures = takt_figures(order, 210)

        assert figures.planned_takt == 1.0
        assert figures.actual_takt == 1.0
        assert figures.runtime == 210
        assert figures.remaining_time == 210
        assert figures.expected_end == order.planned_end

    def test_started_uses_elapsed_runtime(self):
        order = make_order(minutes=120, quantity=100, actual_start=BASE)
        figures = takt_figures(order, 100, actual_quantity=50, now=BASE + timedelta(minutes=60))

        assert figures.planned_takt == pytest.approx(1.2)
        assert figures.runtime == 60
        assert figures.actual_takt == pytest.approx(1.2)
        assert figures.expected_end == order.planned_end

    def test_started_subtracts_unplanned_downtime(self):
        order = make_order(minutes=120, quantity=100, actual_start=BASE)
        figures = takt_figures(
            order, 100, actual_quantity=40, unplanned_downtime=20, now=BASE + timedelta(minutes=60)
        )

        assert figures.actual_takt == pytest.approx(1.0)

    def test_started_without_output_falls_back_to_planned_takt(self):
        order = make_order(minutes=120, quantity=100, actual_start=BASE)
        figures = takt_figures(order, 100, actual_quantity=0, now=BASE + timedelta(minutes=30))

        assert figures.actual_takt == figures.planned_takt

    def test_ended(self):
        order = make_order(
            minutes=200,
            quantity=100,
            actual_start=BASE,
            actual_end=BASE + timedelta(minutes=240),
            confirmed_quantity=90,
        )
        figures = takt_figures(order, 100)

        assert figures.planned_takt == 2.0
        assert figures.actual_takt == 2.4
        assert figures.runtime == 240
        assert figures.actual_duration == 240
        assert figures.remaining_time == pytest.approx(24)
        assert figures.expected_end == order.actual_end + timedelta(minutes=24)

    def test_zero_planned_quantity_raises(self):
        with pytest.raises(ComputationError):
            takt_figures(make_order(), 0)


class TestOEECalculator:
    """Tests for OEECalculator."""

    @pytest.fixture
    def calculator(self):
        return OEECalculator(clock=FakeClock(BASE + timedelta(minutes=60)))

    def test_not_started_order_has_full_availability(self, calculator):
        order = make_order(minutes=210, quantity=210)
        metrics = calculator.calculate(order, breakdown_for(order))

        assert metrics.phase == OrderPhase.NOT_STARTED.value
        assert metrics.availability == 100
        assert metrics.performance == 100
        assert metrics.planned_takt == 1.0

    def test_quality_from_buffered_counts(self, calculator):
        order = make_order(minutes=210, quantity=1000)
        metrics = calculator.calculate(
            order,
            breakdown_for(order),
            buffered(ActualProductionQuantity=1000, ActualProductionYield=950),
        )

        assert metrics.quality == 95.0
        assert metrics.scrap == 50

    def test_unplanned_downtime_reduces_availability(self, calculator):
        order = make_order(minutes=210, quantity=210)
        metrics = calculator.calculate(order, breakdown_for(order, unplanned=21, planned=60))

        assert metrics.availability == pytest.approx(90)
        assert metrics.planned_downtime == 60

    def test_oee_matches_component_ratios(self, calculator):
        rng = random.Random(23)
        for _ in range(100):
            order = make_order(
                minutes=rng.randint(30, 600),
                quantity=rng.randint(1, 1000),
                actual_start=BASE,
            )
            quantity = rng.randint(1, 1000)
            metrics = calculator.calculate(
                order,
                breakdown_for(order, unplanned=rng.uniform(0, 30)),
                buffered(ActualProductionQuantity=quantity, ActualProductionYield=rng.randint(0, quantity)),
            )

            assert metrics.oee == metrics.availability * metrics.performance * metrics.quality / 10000
            assert metrics.classification == classify(metrics.oee)

    def test_buffer_overrides_planned_quantity(self, calculator):
        order = make_order(minutes=210, quantity=210)
        metrics = calculator.calculate(order, breakdown_for(order), buffered(plannedProductionQuantity=105))

        assert metrics.planned_quantity == 105
        assert metrics.planned_takt == 2.0

    def test_fraction_scale(self):
        calculator = OEECalculator(OEEConfig(as_percent=False), clock=FakeClock())
        order = make_order(minutes=100, quantity=100)
        metrics = calculator.calculate(
            order,
            breakdown_for(order),
            buffered(ActualProductionQuantity=100, ActualProductionYield=90),
        )

        assert metrics.as_percent is False
        assert metrics.availability == 1.0
        assert metrics.quality == pytest.approx(0.9)

    def test_machine_context_is_attached(self, calculator, machine):
        order = make_order()
        metrics = calculator.calculate(order, breakdown_for(order), machine=machine)

        assert metrics.plant == "Plant1"
        assert metrics.line_id == "Line1"

    def test_result_is_stored_per_machine(self, calculator):
        order = make_order(machine_id="M7")
        metrics = calculator.calculate(order, breakdown_for(order))

        assert calculator.get_metrics("M7") is metrics

    def test_get_metrics_before_compute_raises(self, calculator):
        with pytest.raises(MetricsUnavailableError):
            calculator.get_metrics("M1")

    def test_zero_planned_quantity_raises(self, calculator):
        order = make_order(quantity=0)
        with pytest.raises(ComputationError):
            calculator.calculate(order, breakdown_for(order))

    def test_finished_order_is_terminal(self, calculator):
        order = make_order(
            actual_start=BASE,
            actual_end=BASE + timedelta(minutes=200),
            status=OrderStatus.FINISHED,
        )
        metrics = calculator.calculate(order, breakdown_for(order))

        assert metrics.is_terminal
        assert metrics.phase == OrderPhase.ENDED.value


class TestFormatMetricsTable:
    """Tests for format_metrics_table."""

    def test_contains_ratios_and_label(self):
        calculator = OEECalculator(clock=FakeClock())
        order = make_order()
        table = format_metrics_table(calculator.calculate(order, breakdown_for(order)))

        assert "| OEE" in table
        assert "Classification" in table
        assert "100.00%" in table
