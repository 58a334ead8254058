from typing import Optional

from .exceptions import ConflictError, DuplicateKeyError, NotFoundError, ValidationError
from .logs import get_logger
from .models import RegisterUserRequest, User
from .storage import USERS, LedgerStore
from .timeutil import now_iso
from .units import round_units

log = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"

REQUIRED_FIELDS = ("name", "email", "meter_no", "phone_number")

# checked in this order; the first taken field is reported
UNIQUE_FIELDS = ("email", "meter_no")
CONFLICT_LABELS = {"email": "email", "meter_no": "meter number"}


class UserDirectory:
    def __init__(self, storage: LedgerStore):
        self.storage = storage

    def register(self, request: RegisterUserRequest) -> User:
        values = {f: (getattr(request, f) or "").strip() for f in REQUIRED_FIELDS}
        if not all(values.values()):
            raise ValidationError("All fields are required: name, email, meter_no, phone_number")

        email = values["email"].lower()
        meter_no = values["meter_no"]
        try:
            doc = self.storage.create_unique(USERS, {
                "name": values["name"],
                "email": email,
                "meter_no": meter_no,
                "phone_number": values["phone_number"],
                "balance": round_units(0),
                "current_units": round_units(0),
                "latest_transaction_id": None,
                "created_at": now_iso(),
            }, UNIQUE_FIELDS)
        except DuplicateKeyError as e:
            raise ConflictError(CONFLICT_LABELS[e.field], e.value) from None
        log.info("Created new user: %s (%s) - Meter: %s", doc["id"], email, meter_no)
        return User(**doc)

    def lookup(self, email: Optional[str], meter_no: Optional[str]) -> User:
        """Resolve a user from the email and meter pair used to sign in.

        Every mismatch raises the same NotFoundError so callers cannot tell
        which of the two fields was wrong.
        """
        if not email or not meter_no:
            raise ValidationError("Both email and meter_no query parameters are required")

        user = self.storage.find_user_by_meter(meter_no.strip())
        if user is None or user.get("email") != email.strip().lower():
            raise NotFoundError(INVALID_CREDENTIALS)
        return User(**user)

    def get(self, user_id: str) -> User:
        doc = self.storage.get(USERS, user_id)
        if doc is None:
            raise NotFoundError(f"User {user_id} not found")
        return User(**doc)
