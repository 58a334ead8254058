"""
Transaction recording and callback reconciliation.

Two entry points write transactions:

- `create_on_initiation` runs right after the gateway acknowledges a payment
  request. The acknowledgment is not a settlement, but the transaction is
  usually written as SUCCESS so the units show up immediately.
- `reconcile_callback` runs when the gateway confirms settlement. It is
  idempotent on the receipt number and updates the initiation record in
  place when the callback carries its conversation id.
"""

from typing import Any, Optional

from .balance import BalanceCalculator
from .callbacks import normalize_callback, parse_transaction_date
from .exceptions import DuplicateKeyError, NotFoundError, ValidationError
from .logs import get_logger
from .models import CallbackResult, NormalizedCallback, Transaction, TransactionStatus
from .storage import TRANSACTIONS, USERS, LedgerStore
from .timeutil import isoformat, now_iso
from .units import UnitConverter, round_units

log = get_logger(__name__)

RECEIPT_KEY = ("mpesa_receipt",)


class TransactionRecorder:
    def __init__(
        self,
        storage: LedgerStore,
        converter: Optional[UnitConverter] = None,
        calculator: Optional[BalanceCalculator] = None,
    ):
        self.storage = storage
        self.converter = converter or UnitConverter()
        self.calculator = calculator or BalanceCalculator(storage)

    def resolve_user(self, meter_no: str) -> dict:
        user = self.storage.find_user_by_meter(meter_no)
        if user is None:
            raise NotFoundError(f"No user found with meter_no: {meter_no}")
        log.debug("Found user %s for meter_no: %s", user["id"], meter_no)
        return user

    def create_on_initiation(
        self,
        meter_no: str,
        amount: Any,
        status: TransactionStatus = TransactionStatus.SUCCESS,
        reference: Optional[str] = None,
    ) -> Transaction:
        status = TransactionStatus.parse(status)
        log.info("Creating transaction for meter %s, amount: %s, status: %s", meter_no, amount, status.value)

        user = self.resolve_user(meter_no)
        units = self.converter.amount_to_units(amount)
        remainder = self.converter.remainder(amount)

        doc = self.storage.create(TRANSACTIONS, {
            "user_id": user["id"],
            "meter_no": meter_no,
            "amount": round_units(amount),
            "units": units,
            "remainder": remainder,
            "status": status.value,
            "reference": reference,
            "mpesa_receipt": None,
            "timestamp": now_iso(),
        })
        log.info(
            "Created transaction %s for user %s: %s units (%s remainder)",
            doc["id"], user["id"], units, remainder,
        )

        if status is TransactionStatus.SUCCESS:
            self._record_payment(user["id"], doc, extra={"last_units_purchased": units})

        return Transaction(**doc)

    def reconcile_callback(self, payload: Any) -> CallbackResult:
        """Apply a settlement callback. Never raises: failures come back as success=False."""
        try:
            callback = normalize_callback(payload)
            log.info(
                "Extracted callback: ResultCode=%s, Amount=%s, BillRefNumber=%s, MpesaReceipt=%s",
                callback.result_code, callback.amount, callback.bill_ref, callback.receipt_number,
            )
            return self._reconcile(callback)
        except (ValidationError, NotFoundError) as e:
            log.error("Rejected callback: %s", e)
            return CallbackResult(success=False, message=str(e))
        except Exception as e:
            log.exception("Error saving callback transaction")
            return CallbackResult(success=False, message=str(e) or e.__class__.__name__)

    def _reconcile(self, callback: NormalizedCallback) -> CallbackResult:
        existing = self.storage.find_transaction_by_receipt(callback.receipt_number)
        if existing is not None:
            return self._duplicate(callback.receipt_number, existing)

        matched = self.storage.find_transaction_by_reference(callback.conversation_id)
        if matched is not None:
            log.info("Found existing transaction %s for reference %s", matched["id"], callback.conversation_id)
            user_id = matched["user_id"]
        else:
            user_id = self.resolve_user(callback.bill_ref)["id"]

        status = callback.status
        timestamp = isoformat(parse_transaction_date(callback.transaction_date))
        settlement = {
            "status": status.value,
            "mpesa_receipt": callback.receipt_number,
            "phone_number": callback.phone_number,
            "result_code": callback.result_code,
            "result_desc": callback.result_desc,
            "timestamp": timestamp,
            "raw_callback": callback.raw,
        }

        # a concurrent delivery of the same receipt loses the claim here
        unique = RECEIPT_KEY if callback.receipt_number else ()
        try:
            if matched is not None:
                doc = self.storage.update_unique(TRANSACTIONS, matched["id"], {
                    **settlement,
                    "mpesa_receipt": callback.receipt_number or matched.get("mpesa_receipt"),
                    "phone_number": callback.phone_number or matched.get("phone_number"),
                }, unique)
                log.info("Updated existing transaction %s for user %s with status %s", doc["id"], user_id, status.value)
            else:
                doc = self.storage.create_unique(TRANSACTIONS, {
                    "user_id": user_id,
                    "meter_no": callback.bill_ref,
                    "amount": round_units(callback.amount),
                    "units": self.converter.amount_to_units(callback.amount),
                    "remainder": self.converter.remainder(callback.amount),
                    "reference": callback.conversation_id,
                    **settlement,
                }, unique)
                log.info("Created new transaction %s for user %s with status %s", doc["id"], user_id, status.value)
        except DuplicateKeyError as e:
            return self._duplicate(callback.receipt_number, self.storage.get(TRANSACTIONS, e.existing_id))

        if status is TransactionStatus.SUCCESS:
            self._record_payment(user_id, doc)
        elif matched is not None and TransactionStatus.is_successful(matched.get("status")):
            # Units credited at initiation drop out of the derived balance; no reversal entry is written.
            log.warning(
                "Transaction %s was SUCCESS at initiation but settled as %s",
                doc["id"], status.value,
            )
            self.calculator.refresh(user_id)

        return CallbackResult(
            success=True,
            duplicate=False,
            transaction_id=doc["id"],
            status=status,
            message=f"Transaction {status.value.lower()} processed successfully",
        )

    @staticmethod
    def _duplicate(receipt_number: str, existing: dict) -> CallbackResult:
        log.info("Transaction with MpesaReceiptNumber %s already exists. Skipping.", receipt_number)
        return CallbackResult(
            success=True,
            duplicate=True,
            transaction_id=existing["id"],
            status=TransactionStatus.parse(existing.get("status")),
            message="Transaction already processed",
        )

    def _record_payment(self, user_id: str, doc: dict, extra: Optional[dict] = None) -> None:
        self.storage.update(USERS, user_id, {
            "latest_transaction_id": doc["id"],
            "last_payment_timestamp": doc["timestamp"],
            "last_payment_amount": doc["amount"],
            **(extra or {}),
        })
        log.info("Updated user %s with latest_transaction_id: %s", user_id, doc["id"])
        self.calculator.refresh(user_id)

    def list_for_user(self, user_id: str) -> list[Transaction]:
        """All of a user's transactions, newest first."""
        docs = self.storage.transactions_for_user(user_id)
        # later inserts win ties on equal timestamps
        transactions = [Transaction(**doc) for doc in reversed(docs)]
        transactions.sort(key=lambda t: t.timestamp, reverse=True)
        return transactions


def to_acknowledgement(result: CallbackResult) -> dict:
    """Gateway response body for a callback. Always sent with HTTP 200."""
    if not result.success:
        return {
            "ResultCode": 1,
            "ResultDesc": result.message or "Failed to process transaction",
            "TransactionID": None,
        }
    desc = "Confirmation received successfully"
    if result.duplicate:
        desc += " (duplicate)"
    return {"ResultCode": 0, "ResultDesc": desc, "TransactionID": result.transaction_id}


__all__ = ["TransactionRecorder", "to_acknowledgement"]
