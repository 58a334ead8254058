"""
Unit Tests for user registration and lookup

Tests cover:
1. Registration and field normalization
2. Email and meter uniqueness
3. Credential lookup without leaking which field was wrong
"""

import pytest
from decimal import Decimal

from prepaid.exceptions import ConflictError, NotFoundError, ValidationError
from prepaid.models import RegisterUserRequest
from prepaid.storage import USERS
from prepaid.users import INVALID_CREDENTIALS

from prepaid.service import PrepaidService

from conftest import EMAIL, METER_NO, SlowQueryStorage, run_together


class TestRegistration:
    """Tests for register."""

    def test_register_normalizes_fields(self, service):
        user = service.users.register(RegisterUserRequest(
            name="  Amina Hassan ",
            email=" Amina@Example.COM ",
            meter_no=" 55550000 ",
            phone_number="254722000000",
        ))

        assert user.name == "Amina Hassan"
        assert user.email == "amina@example.com"
        assert user.meter_no == "55550000"
        assert user.balance == Decimal("0.00")
        assert user.latest_transaction_id is None
        assert user.created_at is not None

    def test_duplicate_email_conflicts(self, service, storage, user):
        """A second registration with the same email is refused and writes nothing."""
        with pytest.raises(ConflictError) as exc_info:
            service.users.register(RegisterUserRequest(
                name="Someone Else",
                email=EMAIL.upper(),
                meter_no="99990000",
                phone_number="254700000001",
            ))

        assert "already exists" in str(exc_info.value)
        assert exc_info.value.field == "email"
        assert len(storage.all(USERS)) == 1

    def test_duplicate_meter_conflicts(self, service, storage, user):
        with pytest.raises(ConflictError) as exc_info:
            service.users.register(RegisterUserRequest(
                name="Someone Else",
                email="other@example.com",
                meter_no=METER_NO,
                phone_number="254700000001",
            ))

        assert exc_info.value.field == "meter number"
        assert len(storage.all(USERS)) == 1

    @pytest.mark.parametrize("missing", ["name", "email", "meter_no", "phone_number"])
    def test_missing_field(self, service, storage, missing):
        fields = {
            "name": "Amina Hassan",
            "email": "amina@example.com",
            "meter_no": "55550000",
            "phone_number": "254722000000",
        }
        fields[missing] = "   "

        with pytest.raises(ValidationError):
            service.users.register(RegisterUserRequest(**fields))
        assert storage.all(USERS) == []

    def test_concurrent_registrations_create_one_user(self, settings):
        """Two simultaneous sign-ups with the same email and meter: one wins, one conflicts."""
        service = PrepaidService(storage=SlowQueryStorage(), settings=settings)
        request = RegisterUserRequest(
            name="Amina Hassan", email="amina@example.com", meter_no="55550000", phone_number="254722000000",
        )

        results = run_together(
            (service.users.register, request),
            (service.users.register, request),
        )

        assert sum(isinstance(r, ConflictError) for r in results) == 1
        assert len(service.storage.query(USERS, "email", "amina@example.com")) == 1
        assert len(service.storage.all(USERS)) == 1


class TestLookup:
    """Tests for lookup."""

    def test_lookup_matches_email_and_meter(self, service, user):
        found = service.users.lookup(EMAIL.upper(), METER_NO)

        assert found.id == user.id

    @pytest.mark.parametrize("email,meter_no", [
        ("wrong@example.com", METER_NO),
        (EMAIL, "00000000"),
        ("wrong@example.com", "00000000"),
    ])
    def test_lookup_failures_are_indistinguishable(self, service, user, email, meter_no):
        with pytest.raises(NotFoundError) as exc_info:
            service.users.lookup(email, meter_no)

        assert str(exc_info.value) == INVALID_CREDENTIALS

    def test_lookup_requires_both_fields(self, service):
        with pytest.raises(ValidationError):
            service.users.lookup(EMAIL, None)

    def test_get_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            service.users.get("missing")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
