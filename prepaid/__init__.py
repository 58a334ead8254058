"""
Prepaid meter ledger.

This package provides:
- Money to unit conversion at a fixed shilling-per-unit rate
- Idempotent reconciliation of M-Pesa Daraja settlement callbacks
- Available-unit balances derived from purchases minus consumption
- A cached per-user balance refreshed after every mutating event
- A background consumption simulator with an explicit start/stop lifecycle
"""

from .balance import BalanceCalculator
from .consumption import ConsumptionRecorder, ConsumptionSimulator
from .models import (
    BalanceReading,
    BalanceSummary,
    CallbackResult,
    ConsumptionRecord,
    ConsumptionType,
    SimulatorState,
    Transaction,
    TransactionStatus,
    User,
)
from .service import PrepaidService
from .storage import InMemoryStorage, LedgerStore
from .transactions import TransactionRecorder, to_acknowledgement
from .units import UnitConverter

__all__ = [
    "BalanceCalculator",
    "BalanceReading",
    "BalanceSummary",
    "CallbackResult",
    "ConsumptionRecord",
    "ConsumptionRecorder",
    "ConsumptionSimulator",
    "ConsumptionType",
    "InMemoryStorage",
    "LedgerStore",
    "PrepaidService",
    "SimulatorState",
    "Transaction",
    "TransactionRecorder",
    "TransactionStatus",
    "UnitConverter",
    "User",
    "to_acknowledgement",
]
