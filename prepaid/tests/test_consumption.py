"""
Unit Tests for unit consumption

Tests cover:
1. Automatic drain per tick and the zero floor
2. Per-user failure isolation within a tick
3. Simulator lifecycle (start/stop, timer cancellation)
4. Device consumption reports
5. Consumption statistics
"""

import time

import pytest
from decimal import Decimal

from prepaid.balance import BalanceCalculator
from prepaid.consumption import ConsumptionRecorder, ConsumptionSimulator
from prepaid.exceptions import NotFoundError, ValidationError, WriteConflict
from prepaid.models import ConsumptionType, RegisterUserRequest, SimulatorState
from prepaid.storage import CONSUMPTION, USERS

from conftest import METER_NO


def make_simulator(service, rate="0.1", interval=60):
    return ConsumptionSimulator(service.storage, service.consumption, rate=rate, interval_seconds=interval)


def wait_for(condition, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


class TestTick:
    """Tests for a single consumption tick."""

    def test_six_ticks_drain_point_six(self, service, storage, user):
        """5.00 units drained at 0.1 per tick leaves 4.40 after six ticks."""
        service.transactions.create_on_initiation(METER_NO, 125)
        simulator = make_simulator(service)

        for _ in range(6):
            simulator.tick()

        assert service.balances.calculate_available_units(user.id) == Decimal("4.40")
        assert storage.get(USERS, user.id)["balance"] == Decimal("4.40")
        assert storage.get(USERS, user.id)["current_units"] == Decimal("4.40")
        assert len(storage.consumption_for_user(user.id)) == 6

    def test_record_contents(self, service, storage, user):
        service.transactions.create_on_initiation(METER_NO, 125)

        make_simulator(service).tick()

        [record] = storage.consumption_for_user(user.id)
        assert record["units_consumed"] == Decimal("0.10")
        assert record["units_before"] == Decimal("5.00")
        assert record["units_after"] == Decimal("4.90")
        assert record["consumption_rate"] == Decimal("0.10")
        assert record["type"] == ConsumptionType.AUTOMATIC.value
        assert record["meter_no"] == METER_NO
        assert storage.get(USERS, user.id)["last_consumption_amount"] == Decimal("0.10")

    def test_never_consumes_past_zero(self, service, storage, user):
        """The last tick takes only what is left; later ticks skip the user."""
        service.transactions.create_on_initiation(METER_NO, 5)  # 0.20 units
        simulator = make_simulator(service, rate="0.15")

        reports = [simulator.tick() for _ in range(4)]

        consumed = [r["units_consumed"] for r in storage.consumption_for_user(user.id)]
        assert consumed == [Decimal("0.15"), Decimal("0.05")]
        assert all(r["units_after"] >= 0 for r in storage.consumption_for_user(user.id))
        assert service.balances.calculate_available_units(user.id) == Decimal("0.00")
        assert [r.processed for r in reports] == [1, 1, 0, 0]
        assert [r.skipped for r in reports] == [0, 0, 1, 1]

    def test_users_at_zero_are_skipped(self, service, storage, user):
        report = make_simulator(service).tick()

        assert report.skipped == 1
        assert report.processed == 0
        assert storage.all(CONSUMPTION) == []

    def test_purchase_between_ticks(self, service, user):
        """Purchases and ticks interleave; the derived balance stays exact."""
        simulator = make_simulator(service)
        service.transactions.create_on_initiation(METER_NO, 25)
        simulator.tick()
        service.transactions.create_on_initiation(METER_NO, 50)
        simulator.tick()
        simulator.tick()

        assert service.balances.calculate_available_units(user.id) == Decimal("2.70")

    def test_failure_for_one_user_does_not_abort_tick(self, service, storage, user):
        other = service.users.register(RegisterUserRequest(
            name="John Otieno", email="john@example.com", meter_no="87654321", phone_number="254711111111",
        ))
        service.transactions.create_on_initiation(METER_NO, 125)
        service.transactions.create_on_initiation("87654321", 125)

        class FlakyCalculator(BalanceCalculator):
            def calculate_available_units(self, user_id):
                if user_id == user.id:
                    raise RuntimeError("read timeout")
                return super().calculate_available_units(user_id)

        recorder = ConsumptionRecorder(storage, FlakyCalculator(storage))
        simulator = ConsumptionSimulator(storage, recorder, rate="0.1", interval_seconds=60)

        report = simulator.tick()

        assert report.failed == 1
        assert report.processed == 1
        assert report.units_consumed == Decimal("0.10")
        assert len(storage.consumption_for_user(other.id)) == 1
        assert storage.consumption_for_user(user.id) == []


class TestLifecycle:
    """Tests for start/stop."""

    def test_initial_state(self, service):
        assert make_simulator(service).state == SimulatorState.STOPPED

    def test_start_and_stop(self, service):
        simulator = make_simulator(service)

        assert simulator.start() is True
        assert simulator.state == SimulatorState.RUNNING
        assert simulator.stop() is True
        assert simulator.state == SimulatorState.STOPPED

    def test_start_twice_is_noop(self, service):
        simulator = make_simulator(service)
        simulator.start()
        try:
            assert simulator.start() is False
            assert simulator.is_running
        finally:
            simulator.stop()

    def test_stop_when_stopped_is_noop(self, service):
        assert make_simulator(service).stop() is False

    def test_timer_ticks_until_stopped(self, service, storage, user):
        service.transactions.create_on_initiation(METER_NO, 125)
        simulator = make_simulator(service, interval=0.02)

        simulator.start()
        assert wait_for(lambda: len(storage.consumption_for_user(user.id)) >= 2)
        simulator.stop()

        time.sleep(0.1)
        settled = len(storage.consumption_for_user(user.id))
        time.sleep(0.15)
        assert len(storage.consumption_for_user(user.id)) == settled

    def test_invalid_configuration(self, service):
        with pytest.raises(ValidationError):
            make_simulator(service, rate="0.001")
        with pytest.raises(ValidationError):
            make_simulator(service, interval=0)


class TestDeviceConsumption:
    """Tests for consume_units."""

    def test_consume_units(self, service, storage, user):
        service.transactions.create_on_initiation(METER_NO, 125)

        result = service.consumption.consume_units(METER_NO, "1.25")

        assert result.units_consumed == Decimal("1.25")
        assert result.prev_balance == Decimal("5.00")
        assert result.new_balance == Decimal("3.75")
        assert storage.get(USERS, user.id)["balance"] == Decimal("3.75")

        [record] = storage.consumption_for_user(user.id)
        assert record["type"] == ConsumptionType.MANUAL.value
        assert record["id"] == result.record_id

    def test_consume_more_than_available(self, service, user):
        """A report larger than the balance drains it to zero and no further."""
        service.transactions.create_on_initiation(METER_NO, 25)

        result = service.consumption.consume_units(METER_NO, 3)

        assert result.units_consumed == Decimal("1.00")
        assert result.new_balance == Decimal("0.00")
        assert service.balances.calculate_available_units(user.id) == Decimal("0.00")

    def test_consume_with_nothing_available(self, service, storage, user):
        result = service.consumption.consume_units(METER_NO, 1)

        assert result.units_consumed == Decimal("0.00")
        assert result.record_id is None
        assert storage.all(CONSUMPTION) == []

    def test_decrement_uses_atomic_transaction(self, service, storage, user):
        service.transactions.create_on_initiation(METER_NO, 125)

        assert service.consumption.decrement_balance(user.id, Decimal("2"), fallback=Decimal("0")) == Decimal("3.00")
        assert storage.get(USERS, user.id)["balance"] == Decimal("3.00")
        assert service.consumption.decrement_balance(user.id, Decimal("10"), fallback=Decimal("0")) == Decimal("0.00")

    def test_decrement_conflict_falls_back_to_recompute(self, service, storage, user, monkeypatch):
        """A decrement that keeps losing races still leaves the recorded consumption and a correct balance."""
        service.transactions.create_on_initiation(METER_NO, 125)

        def always_conflicts(collection, doc_id, field, fn):
            raise WriteConflict(collection, doc_id, field)

        monkeypatch.setattr(storage, "transact", always_conflicts)

        result = service.consumption.consume_units(METER_NO, 2)

        assert result.units_consumed == Decimal("2.00")
        assert len(storage.consumption_for_user(user.id)) == 1
        assert storage.get(USERS, user.id)["balance"] == Decimal("3.00")

    def test_consume_unknown_meter(self, service):
        with pytest.raises(NotFoundError):
            service.consumption.consume_units("00000000", 1)

    @pytest.mark.parametrize("units", [None, 0, -1, "lots"])
    def test_consume_invalid_units(self, service, user, units):
        with pytest.raises(ValidationError):
            service.consumption.consume_units(METER_NO, units)


class TestConsumptionStats:
    """Tests for stats."""

    def test_stats(self, service, user):
        service.transactions.create_on_initiation(METER_NO, 125)
        simulator = make_simulator(service)
        for _ in range(3):
            simulator.tick()
        service.consumption.consume_units(METER_NO, "0.5")

        stats = service.consumption.stats(user.id)

        assert stats.total_consumed == Decimal("0.80")
        assert stats.consumption_count == 4
        assert stats.average_consumption == Decimal("0.20")
        assert stats.last_consumption is not None

    def test_empty_stats(self, service, user):
        stats = service.consumption.stats(user.id)

        assert stats.consumption_count == 0
        assert stats.last_consumption is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
