import threading
import time

import pytest

from prepaid.config import Settings
from prepaid.models import RegisterUserRequest
from prepaid.service import PrepaidService
from prepaid.storage import InMemoryStorage


METER_NO = "12345678"
EMAIL = "jane@example.com"


@pytest.fixture
def settings():
    return Settings(
        api_key="test-key",
        ksh_per_unit=25,
        consumption_rate="0.1",
        consumption_interval_seconds=15,
        consumption_enabled=False,
        daraja_consumer_key="key",
        daraja_consumer_secret="secret",
        daraja_shortcode="600000",
        daraja_test_msisdn="254708374149",
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def service(storage, settings):
    return PrepaidService(storage=storage, settings=settings)


@pytest.fixture
def user(service):
    """A registered user owning METER_NO."""
    return service.users.register(RegisterUserRequest(
        name="Jane Wanjiku",
        email=EMAIL,
        meter_no=METER_NO,
        phone_number="254708374149",
    ))


class SlowQueryStorage(InMemoryStorage):
    """Store whose lookups stall, widening the gap between a check and a write."""

    def query(self, collection, field, value):
        time.sleep(0.05)
        return super().query(collection, field, value)


def run_together(*calls):
    """Run each (fn, *args) call on its own thread, released at once by a barrier.

    Returns one result per call; a raised exception is returned in its place.
    """
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def worker(index, fn, args):
        barrier.wait()
        try:
            results[index] = fn(*args)
        except Exception as e:
            results[index] = e

    threads = [
        threading.Thread(target=worker, args=(i, call[0], call[1:]))
        for i, call in enumerate(calls)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return results
