from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from trust_ledger.exceptions import ExternalUnavailableError
from trust_ledger.models import DepositReceipt
from trust_ledger.storage import InMemoryStorage
from trust_ledger.service import TrustLedger


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTrustScores:
    """Trust scores keyed by identity; listed identities raise instead."""

    def __init__(self, scores=None, failing=None, ego_scores=None):
        self.scores = {k: Decimal(str(v)) for k, v in (scores or {}).items()}
        self.ego_scores = ego_scores or {}
        self.failing = set(failing or ())
        self.calls = []

    def get_trust_score(self, identity: str) -> Decimal:
        self.calls.append(identity)
        if identity in self.failing:
            raise ExternalUnavailableError(f"score lookup for {identity} timed out", service="maxflow")
        return self.scores.get(identity, Decimal(0))

    def get_ego_score(self, address: str) -> dict:
        self.calls.append(address)
        if address in self.failing:
            raise ExternalUnavailableError(f"ego score for {address} timed out", service="maxflow")
        return self.ego_scores[address]


class FakeDepositExecutor:
    """Replays queued outcomes: a DepositReceipt, an exception, or True for success."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    def execute(self, wallet_id, amount, reference):
        self.calls.append((wallet_id, amount, reference))
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is True:
            return DepositReceipt(success=True, transaction_reference=f"tx-{len(self.calls)}")
        return outcome


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(clock):
    return InMemoryStorage(clock=clock)


@pytest.fixture
def ledger(storage, clock):
    return TrustLedger(storage, clock=clock)
