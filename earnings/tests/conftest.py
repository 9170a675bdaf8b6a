import itertools
import random
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from earnings.config import Settings
from earnings.models import BalanceAdjustmentRequest, RegisterRequest
from earnings.service import EarningsService
from earnings.storage import InMemoryStorage


START = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def config():
    return Settings(
        admin_email="admin@test.local",
        admin_password="admin-pass",
        platform_timezone="UTC",
        frontend_url="https://rtr.example",
    )


@pytest.fixture
def service(clock, config):
    return EarningsService(storage=InMemoryStorage(config=config), config=config, clock=clock, rng=random.Random(1234))


@pytest.fixture
def make_user(service):
    counter = itertools.count(1)

    def _make_user(name=None, referral_code=None, pkr=0, coins=0):
        n = next(counter)
        user = service.register(RegisterRequest(
            email=f"user{n}@example.com",
            password="secret123",
            name=name or f"User {n}",
            referral_code=referral_code,
        ))
        if pkr or coins:
            service.adjust_balance(user.id, BalanceAdjustmentRequest(pkr_delta=Decimal(pkr), coin_delta=coins))
        return service.get_profile(user.id)

    return _make_user


@pytest.fixture
def run_in_threads():
    """Start ``count`` threads on ``target`` at the same moment and collect results and errors."""

    def _run(target, count=8):
        barrier = threading.Barrier(count)
        results, errors = [], []

        def worker():
            barrier.wait()
            try:
                results.append(target())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        return results, errors

    return _run
