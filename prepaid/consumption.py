"""
Unit consumption.

`ConsumptionSimulator` stands in for real meters: while RUNNING it drains
every user's available units at a fixed rate per tick (0.1 units every 15
seconds by default). `ConsumptionRecorder` owns the writes, and also serves
device consumption reports arriving over HTTP.

A consumption record is only written for units that were actually
available, so the derived balance never goes below zero.
"""

import threading
from decimal import Decimal
from typing import Any, Optional

from .balance import BalanceCalculator
from .config import get_settings
from .exceptions import NotFoundError, ValidationError, WriteConflict
from .logs import get_logger
from .models import (
    ConsumptionRecord,
    ConsumptionResult,
    ConsumptionStats,
    ConsumptionType,
    SimulatorState,
    TickReport,
    coerce_units,
)
from .storage import CONSUMPTION, USERS, LedgerStore
from .timeutil import now_iso, utc_now
from .units import round_units

log = get_logger(__name__)

ZERO = Decimal("0")


class ConsumptionRecorder:
    def __init__(self, storage: LedgerStore, calculator: Optional[BalanceCalculator] = None):
        self.storage = storage
        self.calculator = calculator or BalanceCalculator(storage)

    def record(
        self,
        user: dict,
        units_consumed: Decimal,
        units_before: Decimal,
        rate: Decimal,
        kind: ConsumptionType,
    ) -> ConsumptionRecord:
        units_after = round_units(max(ZERO, units_before - units_consumed))
        doc = self.storage.create(CONSUMPTION, {
            "user_id": user["id"],
            "meter_no": user.get("meter_no"),
            "units_consumed": round_units(units_consumed),
            "units_before": round_units(units_before),
            "units_after": units_after,
            "consumption_rate": rate,
            "timestamp": now_iso(),
            "type": kind.value,
        })
        self.storage.update(USERS, user["id"], {
            "current_units": units_after,
            "last_consumption_timestamp": doc["timestamp"],
            "last_consumption_amount": doc["units_consumed"],
        })
        return ConsumptionRecord(**doc)

    def consume_for_user(self, user: dict, rate: Decimal) -> Optional[ConsumptionRecord]:
        """One automatic drain step. Returns None when the user has nothing left."""
        available = self.calculator.calculate_available_units(user["id"])
        if available <= 0:
            return None

        units = round_units(min(rate, available))
        record = self.record(user, units, available, rate, ConsumptionType.AUTOMATIC)
        self.calculator.refresh(user["id"])
        log.debug(
            "User %s: consumed %s units (%s remaining)",
            user["id"], record.units_consumed, record.units_after,
        )
        return record

    def decrement_balance(self, user_id: str, units: Decimal, fallback: Decimal) -> Decimal:
        """Atomically lower the cached balance by `units`, never below zero."""
        def _apply(current: Any) -> Decimal:
            base = coerce_units(current)
            if base is None:
                base = fallback
            return round_units(max(ZERO, base - units))

        return self.storage.transact(USERS, user_id, "balance", _apply)

    def consume_units(self, meter_no: str, units: Any) -> ConsumptionResult:
        """Apply a device consumption report for `meter_no`."""
        requested = coerce_units(units)
        if requested is None or requested <= 0:
            raise ValidationError("meterNo and units are required")

        user = self.storage.find_user_by_meter(meter_no)
        if user is None:
            raise NotFoundError(f"No user found with meter_no: {meter_no}")

        available = self.calculator.calculate_available_units(user["id"])
        consumed = round_units(min(requested, available))

        record = None
        if consumed > 0:
            record = self.record(user, consumed, available, requested, ConsumptionType.MANUAL)
            try:
                self.decrement_balance(user["id"], consumed, fallback=available)
            except WriteConflict:
                log.warning("Balance decrement for user %s kept conflicting; recomputing instead", user["id"])
            self.calculator.refresh(user["id"])
        else:
            log.info("Meter %s reported %s units with nothing available", meter_no, requested)

        return ConsumptionResult(
            meter_no=meter_no,
            units_requested=round_units(requested),
            units_consumed=consumed,
            prev_balance=available,
            new_balance=round_units(available - consumed),
            record_id=record.id if record else None,
        )

    def stats(self, user_id: str) -> ConsumptionStats:
        records = [ConsumptionRecord(**doc) for doc in self.storage.consumption_for_user(user_id)]
        if not records:
            return ConsumptionStats()

        total = sum((r.units_consumed for r in records), ZERO)
        return ConsumptionStats(
            total_consumed=round_units(total),
            consumption_count=len(records),
            average_consumption=round_units(total / len(records)),
            last_consumption=max(records, key=lambda r: r.timestamp),
        )


class ConsumptionSimulator:
    """Background drain with an explicit STOPPED/RUNNING lifecycle.

    `start` and `stop` are the only state changes. Ticks run on a
    `threading.Timer` chain; `stop` cancels the pending timer, and a tick
    already in progress finishes without scheduling another.
    """

    def __init__(
        self,
        storage: LedgerStore,
        recorder: Optional[ConsumptionRecorder] = None,
        rate: Optional[Any] = None,
        interval_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.storage = storage
        self.recorder = recorder or ConsumptionRecorder(storage)
        self.rate = round_units(rate if rate is not None else settings.consumption_rate)
        if self.rate <= 0:
            raise ValidationError(f"consumption rate must be at least 0.01 units, got {rate}")
        self.interval_seconds = float(
            interval_seconds if interval_seconds is not None else settings.consumption_interval_seconds
        )
        if self.interval_seconds <= 0:
            raise ValidationError("consumption interval must be positive")

        self._lock = threading.Lock()
        self._state = SimulatorState.STOPPED
        self._timer: Optional[threading.Timer] = None
        self._generation = 0

    @property
    def state(self) -> SimulatorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SimulatorState.RUNNING

    def start(self) -> bool:
        with self._lock:
            if self._state is SimulatorState.RUNNING:
                log.info("Unit consumption service is already running")
                return False
            self._state = SimulatorState.RUNNING
            self._generation += 1
            self._schedule(self._generation)
        log.info("Started unit consumption: %s units every %s seconds", self.rate, self.interval_seconds)
        return True

    def stop(self) -> bool:
        with self._lock:
            if self._state is SimulatorState.STOPPED:
                log.info("Unit consumption service is not running")
                return False
            self._state = SimulatorState.STOPPED
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        log.info("Unit consumption service stopped")
        return True

    def _schedule(self, generation: int) -> None:
        timer = threading.Timer(self.interval_seconds, self._run, args=(generation,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _run(self, generation: int) -> None:
        with self._lock:
            if self._state is not SimulatorState.RUNNING or generation != self._generation:
                return
        try:
            self.tick()
        except Exception:
            log.exception("Error in consumption cycle")
        finally:
            with self._lock:
                if self._state is SimulatorState.RUNNING and generation == self._generation:
                    self._schedule(generation)

    def tick(self) -> TickReport:
        """Drain every user once."""
        report = TickReport(timestamp=utc_now())
        for user in self.storage.all(USERS):
            try:
                record = self.recorder.consume_for_user(user, self.rate)
            except Exception:
                report.failed += 1
                log.exception("Error processing user %s", user.get("id"))
                continue
            if record is None:
                report.skipped += 1
            else:
                report.processed += 1
                report.units_consumed = round_units(report.units_consumed + record.units_consumed)

        log.info(
            "Consumption cycle: processed %d users, skipped %d, failed %d",
            report.processed, report.skipped, report.failed,
            extra={"units_consumed": str(report.units_consumed)},
        )
        return report
