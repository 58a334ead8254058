from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .balance import BalanceCalculator
from .config import Settings, get_settings
from .consumption import ConsumptionRecorder, ConsumptionSimulator
from .exceptions import UpstreamFailure, ValidationError
from .gateway import DarajaClient
from .logs import get_logger
from .models import TransactionStatus
from .storage import InMemoryStorage, LedgerStore
from .transactions import TransactionRecorder
from .units import UnitConverter
from .users import UserDirectory

log = get_logger(__name__)


class PrepaidService:
    """Wires the ledger components around one store."""

    def __init__(
        self,
        storage: Optional[LedgerStore] = None,
        settings: Optional[Settings] = None,
        gateway: Optional[DarajaClient] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.converter = UnitConverter(self.settings.ksh_per_unit)
        self.balances = BalanceCalculator(self.storage)
        self.transactions = TransactionRecorder(self.storage, self.converter, self.balances)
        self.consumption = ConsumptionRecorder(self.storage, self.balances)
        self.simulator = ConsumptionSimulator(
            self.storage,
            self.consumption,
            rate=self.settings.consumption_rate,
            interval_seconds=self.settings.consumption_interval_seconds,
        )
        self.users = UserDirectory(self.storage)
        self._gateway = gateway

    @property
    def gateway(self) -> DarajaClient:
        if self._gateway is None:
            self._gateway = DarajaClient(self.settings)
        return self._gateway

    def initiate_payment(self, meter_no: Optional[str], amount: Any) -> dict:
        """Start a gateway payment and record it provisionally as SUCCESS.

        The gateway's acknowledgment is not a settlement: the later callback
        decides the final status.
        """
        if not meter_no or amount is None:
            raise ValidationError("meter_no and amount are required")
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError(f"invalid amount {amount!r}") from None
        if amount <= 0:
            raise ValidationError("amount must be greater than 0")
        # Unknown meters fail before the gateway is contacted.
        self.transactions.resolve_user(meter_no)

        ack = self.gateway.initiate_payment(meter_no, amount)
        if not ack.accepted:
            raise UpstreamFailure(
                ack.description or "Payment request was not accepted",
                gateway_error=ack.description,
            )

        try:
            transaction = self.transactions.create_on_initiation(
                meter_no, amount, TransactionStatus.SUCCESS, ack.conversation_id,
            )
        except Exception:
            # the payment is already accepted; the settlement callback creates the record
            log.exception("Failed to create transaction record for meter %s", meter_no)
            return dict(ack.raw)
        log.info("Created transaction %s with SUCCESS status", transaction.id)
        return {**ack.raw, "transaction_id": transaction.id, "status": transaction.status.value}
