"""
Balance calculation.

Available units have two representations:

- the derived value, `calculate_available_units`: every SUCCESS transaction's
  units minus every consumption record's units. This is the ground truth and
  is correct under any interleaving of purchases and consumption because it
  is rebuilt from the full history.
- the cached `balance` field on the user document, written only by
  `recompute`. It may lag the derived value between a mutating event and
  the refresh that follows it, and after a failed refresh until the next one.

`read_cache` never recomputes and `recompute` never reads the cache.
"""

from decimal import Decimal
from typing import Optional

from .exceptions import NotFoundError
from .logs import get_logger
from .models import BalanceReading, BalanceSummary, TransactionStatus, coerce_units
from .storage import USERS, LedgerStore
from .timeutil import now_iso, utc_now
from .units import round_units

log = get_logger(__name__)

ZERO = Decimal("0")


def _units_of(doc: dict, field: str) -> Decimal:
    return coerce_units(doc.get(field)) or ZERO


class BalanceCalculator:
    def __init__(self, storage: LedgerStore):
        self.storage = storage

    def purchased_units(self, user_id: str) -> Decimal:
        return sum(
            (_units_of(t, "units") for t in self.storage.transactions_for_user(user_id)
             if TransactionStatus.is_successful(t.get("status"))),
            ZERO,
        )

    def consumed_units(self, user_id: str) -> Decimal:
        return sum(
            (_units_of(c, "units_consumed") for c in self.storage.consumption_for_user(user_id)),
            ZERO,
        )

    def calculate_available_units(self, user_id: str) -> Decimal:
        available = self.purchased_units(user_id) - self.consumed_units(user_id)
        return round_units(max(ZERO, available))

    def calculate_user_balance(self, user_id: str) -> BalanceSummary:
        successful = [
            t for t in self.storage.transactions_for_user(user_id)
            if TransactionStatus.is_successful(t.get("status"))
        ]
        summary = BalanceSummary(
            total_amount_paid=round_units(sum((_units_of(t, "amount") for t in successful), ZERO)),
            total_units_purchased=round_units(sum((_units_of(t, "units") for t in successful), ZERO)),
            available_units=self.calculate_available_units(user_id),
            transaction_count=len(successful),
        )
        log.info(
            "User %s: %d successful transactions, total paid %s, purchased units %s, available units %s",
            user_id, summary.transaction_count, summary.total_amount_paid,
            summary.total_units_purchased, summary.available_units,
        )
        return summary

    def read_cache(self, user_id: str) -> Optional[Decimal]:
        user = self.storage.get(USERS, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return coerce_units(user.get("balance"))

    def recompute(self, user_id: str) -> Decimal:
        """Rebuild available units from history and persist them as the cached balance."""
        available = self.calculate_available_units(user_id)
        self.storage.update(USERS, user_id, {"balance": available, "balance_updated_at": now_iso()})
        log.info("Updated user %s balance: %s", user_id, available)
        return available

    def refresh(self, user_id: str) -> Optional[Decimal]:
        """`recompute` for use after a committed write: failures are logged, never raised."""
        try:
            return self.recompute(user_id)
        except Exception:
            log.warning("Failed to update user %s balance", user_id, exc_info=True)
            return None

    def get_balance(self, meter_no: str) -> BalanceReading:
        user = self.storage.find_user_by_meter(meter_no)
        if user is None:
            raise NotFoundError(f"No user found with meter_no: {meter_no}")

        cached = coerce_units(user.get("balance"))
        if cached is not None:
            return BalanceReading(
                meter_no=meter_no,
                available_units=round_units(cached),
                timestamp=utc_now(),
                cached=True,
            )

        log.info("No usable cached balance for meter %s, recomputing", meter_no)
        return BalanceReading(
            meter_no=meter_no,
            available_units=self.calculate_available_units(user["id"]),
            timestamp=utc_now(),
            cached=False,
        )
