from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

# Decimal in Python, plain JSON number on the wire.
Units = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @classmethod
    def parse(cls, value: Any) -> "TransactionStatus":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        if text == "COMPLETED":
            return cls.SUCCESS
        return cls(text)

    @classmethod
    def is_successful(cls, value: Any) -> bool:
        """True for SUCCESS and the legacy "completed" marker, in any case."""
        try:
            return cls.parse(value) is cls.SUCCESS
        except ValueError:
            return False


class ConsumptionType(str, Enum):
    AUTOMATIC = "automatic_consumption"
    MANUAL = "manual_consumption"


class SimulatorState(str, Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"


def coerce_units(value: Any) -> Optional[Decimal]:
    """Parse a stored numeric field; None when absent or not a number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


class User(BaseModel):
    id: str
    name: str
    email: str
    meter_no: str
    phone_number: str
    balance: Optional[Units] = None
    current_units: Optional[Units] = None
    latest_transaction_id: Optional[str] = None
    last_payment_timestamp: Optional[datetime] = None
    last_payment_amount: Optional[Units] = None
    last_units_purchased: Optional[Units] = None
    last_consumption_timestamp: Optional[datetime] = None
    last_consumption_amount: Optional[Units] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("balance", "current_units", mode="before")
    @classmethod
    def _tolerate_bad_cache(cls, value: Any) -> Optional[Decimal]:
        return coerce_units(value)


class Transaction(BaseModel):
    id: str
    user_id: str
    meter_no: str
    amount: Units
    units: Units = Decimal("0.00")
    remainder: Optional[Units] = None
    status: TransactionStatus
    reference: Optional[str] = None
    mpesa_receipt: Optional[str] = None
    phone_number: Optional[str] = None
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    timestamp: datetime
    raw_callback: Optional[dict] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("status", mode="before")
    @classmethod
    def _legacy_status(cls, value: Any) -> TransactionStatus:
        return TransactionStatus.parse(value)


class ConsumptionRecord(BaseModel):
    id: str
    user_id: str
    meter_no: Optional[str] = None
    units_consumed: Units
    units_before: Units
    units_after: Units
    consumption_rate: Units
    timestamp: datetime
    type: ConsumptionType = ConsumptionType.AUTOMATIC

    model_config = ConfigDict(from_attributes=True, frozen=True)


class NormalizedCallback(BaseModel):
    """Gateway settlement callback after field-name normalization."""

    result_code: int
    result_desc: str = "Unknown result"
    receipt_number: Optional[str] = None
    amount: Decimal = Decimal("0")
    transaction_date: Optional[str] = None
    bill_ref: str
    phone_number: Optional[str] = None
    conversation_id: Optional[str] = None
    raw: dict = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def status(self) -> TransactionStatus:
        return TransactionStatus.SUCCESS if self.result_code == 0 else TransactionStatus.FAILED


class CallbackResult(BaseModel):
    success: bool
    duplicate: bool = False
    transaction_id: Optional[str] = None
    status: Optional[TransactionStatus] = None
    message: str


class BalanceSummary(BaseModel):
    total_amount_paid: Units = Field(Decimal("0.00"), alias="totalAmountPaid")
    total_units_purchased: Units = Field(Decimal("0.00"), alias="totalUnitsPurchased")
    available_units: Units = Field(Decimal("0.00"), alias="availableUnits")
    transaction_count: int = Field(0, alias="transactionCount")

    model_config = ConfigDict(populate_by_name=True)


class BalanceReading(BaseModel):
    meter_no: str
    available_units: Units = Field(..., alias="availableUnits")
    timestamp: datetime
    cached: bool = True

    model_config = ConfigDict(populate_by_name=True)


class ConsumptionStats(BaseModel):
    total_consumed: Units = Field(Decimal("0.00"), alias="totalConsumed")
    consumption_count: int = Field(0, alias="consumptionCount")
    average_consumption: Units = Field(Decimal("0.00"), alias="averageConsumption")
    last_consumption: Optional[ConsumptionRecord] = Field(None, alias="lastConsumption")

    model_config = ConfigDict(populate_by_name=True)


class ConsumptionResult(BaseModel):
    meter_no: str
    units_requested: Units
    units_consumed: Units
    prev_balance: Units
    new_balance: Units
    record_id: Optional[str] = None


class TickReport(BaseModel):
    timestamp: datetime
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    units_consumed: Units = Decimal("0.00")


class RegisterUserRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    meter_no: Optional[str] = None
    phone_number: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Jane Wanjiku",
            "email": "jane@example.com",
            "meter_no": "12345678",
            "phone_number": "254708374149"
        }
    })


class SimulatePaymentRequest(BaseModel):
    meter_no: Optional[str] = None
    amount: Optional[Decimal] = None


class ConsumeRequest(BaseModel):
    meter_no: Optional[str] = Field(None, alias="meterNo")
    units: Optional[Decimal] = None

    model_config = ConfigDict(populate_by_name=True)
