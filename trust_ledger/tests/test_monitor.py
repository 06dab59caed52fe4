"""
Unit Tests for the Auto-deposit Monitor

Tests cover:
1. First observation initializes the watermark
2. Threshold and fee-buffer edges
3. At most one deposit per balance increase
4. Failed deposits leave the watermark for a retry
5. Executor timeouts and per-wallet serialization
"""

import time
from decimal import Decimal

import pytest

from trust_ledger.exceptions import ContentionError, ExternalUnavailableError
from trust_ledger.models import AutoDepositConfig, DepositReceipt, SnapshotKind
from trust_ledger.monitor import BalanceDeltaMonitor, deposit_due

from conftest import FakeDepositExecutor


WALLET = "0xwallet"


def unavailable():
    return ExternalUnavailableError("strategy vault unreachable", service="deposit")


@pytest.fixture
def executor():
    return FakeDepositExecutor()


@pytest.fixture
def monitor(storage, executor, clock):
    monitor = BalanceDeltaMonitor(storage, executor, retry_delay=0, clock=clock)
    yield monitor
    monitor.close()


class TestDepositDue:
    """Tests for the trigger rule."""

    @pytest.mark.parametrize("delta,observed,expected", [
        ("10", "11", True),
        ("10", "10.99", False),
        ("9.99", "50", False),
        ("25", "25", True),
        ("0", "100", False),
        ("-5", "100", False),
    ])
    def test_threshold_and_fee_buffer(self, delta, observed, expected):
        """Test delta must reach the minimum and the balance must cover minimum plus buffer."""
        assert deposit_due(Decimal(delta), Decimal(observed), AutoDepositConfig()) is expected


class TestBalanceDeltaMonitor:
    """Tests for evaluating balance observations."""

    def test_first_observation_only_records(self, monitor, storage, executor):
        """Test the first reading initializes the watermark without depositing."""
        result = monitor.evaluate(WALLET, Decimal("500"))

        assert result.triggered is False
        assert executor.calls == []
        assert storage.get_watermark(WALLET).previous_observed_balance == Decimal("500")

    def test_increase_triggers_single_deposit(self, monitor, storage, executor):
        """Test a 0 -> 15 increase deposits once and repeated readings do not re-trigger."""
        monitor.evaluate(WALLET, Decimal("0"))

        first = monitor.evaluate(WALLET, Decimal("15"))
        again = monitor.evaluate(WALLET, Decimal("15"))

        assert first.triggered is True
        assert first.succeeded is True
        assert first.deposit_amount == Decimal("10")
        assert first.external_reference == "tx-1"
        assert again.triggered is False
        assert len(executor.calls) == 1
        assert storage.get_watermark(WALLET).previous_observed_balance == Decimal("5")

    def test_post_deposit_balance_then_new_increase(self, monitor, executor):
        """Test a later increase on top of the settled balance triggers again."""
        monitor.evaluate(WALLET, Decimal("0"))
        monitor.evaluate(WALLET, Decimal("15"))

        settled = monitor.evaluate(WALLET, Decimal("5"))
        topped_up = monitor.evaluate(WALLET, Decimal("16"))

        assert settled.triggered is False
        assert topped_up.triggered is True
        assert len(executor.calls) == 2

    def test_small_increase_moves_watermark(self, monitor, storage, executor):
        """Test a sub-threshold change just advances the watermark."""
        monitor.evaluate(WALLET, Decimal("1"))

        result = monitor.evaluate(WALLET, Decimal("10.5"))

        assert result.triggered is False
        assert executor.calls == []
        assert storage.get_watermark(WALLET).previous_observed_balance == Decimal("10.5")

    def test_exact_threshold_with_buffer(self, monitor, executor):
        """Test delta of exactly the minimum triggers when the buffer is covered."""
        monitor.evaluate(WALLET, Decimal("1"))

        result = monitor.evaluate(WALLET, Decimal("11"))

        assert result.triggered is True
        assert executor.calls[0][1] == Decimal("10")

    def test_failed_deposit_keeps_watermark(self, storage, clock):
        """Test a failed deposit is reported and retried on the next reading."""
        executor = FakeDepositExecutor([unavailable(), unavailable(), unavailable()])
        monitor = BalanceDeltaMonitor(storage, executor, max_attempts=3, retry_delay=0, clock=clock)
        monitor.evaluate(WALLET, Decimal("0"))

        failed = monitor.evaluate(WALLET, Decimal("15"))

        assert failed.triggered is True
        assert failed.succeeded is False
        assert "unreachable" in failed.error
        assert len(executor.calls) == 3
        assert storage.get_watermark(WALLET).previous_observed_balance == Decimal("0")

        retried = monitor.evaluate(WALLET, Decimal("15"))

        assert retried.succeeded is True
        assert len(executor.calls) == 4
        assert len({reference for _, _, reference in executor.calls}) == 1
        assert retried.idempotency_key == failed.idempotency_key
        monitor.close()

    def test_transient_failure_retried_within_call(self, storage, clock):
        """Test one executor failure is absorbed by the retry policy."""
        executor = FakeDepositExecutor([unavailable()])
        monitor = BalanceDeltaMonitor(storage, executor, retry_delay=0, clock=clock)
        monitor.evaluate(WALLET, Decimal("0"))

        result = monitor.evaluate(WALLET, Decimal("20"))

        assert result.succeeded is True
        assert len(executor.calls) == 2
        monitor.close()

    def test_rejected_receipt_is_a_failure(self, storage, clock):
        """Test a receipt with success=False counts as a failed deposit."""
        rejected = DepositReceipt(success=False, error="slippage too high")
        executor = FakeDepositExecutor([rejected])
        monitor = BalanceDeltaMonitor(storage, executor, max_attempts=1, retry_delay=0, clock=clock)
        monitor.evaluate(WALLET, Decimal("0"))

        result = monitor.evaluate(WALLET, Decimal("20"))

        assert result.triggered is True
        assert result.error == "slippage too high"
        monitor.close()

    def test_executor_timeout(self, storage, clock):
        """Test a hung executor call is abandoned after the timeout."""

        class SlowExecutor:
            def execute(self, wallet_id, amount, reference):
                time.sleep(0.5)
                return DepositReceipt(success=True, transaction_reference="late")

        monitor = BalanceDeltaMonitor(
            storage, SlowExecutor(), max_attempts=1, retry_delay=0, call_timeout=0.05, clock=clock
        )
        monitor.evaluate(WALLET, Decimal("0"))

        result = monitor.evaluate(WALLET, Decimal("20"))

        assert result.triggered is True
        assert "timed out" in result.error
        assert storage.get_watermark(WALLET).previous_observed_balance == Decimal("0")
        monitor.close()

    def test_snapshots_recorded(self, monitor, storage):
        """Test each deposit attempt leaves an audit snapshot."""
        monitor.evaluate(WALLET, Decimal("0"))
        monitor.evaluate(WALLET, Decimal("12"))

        snapshots = storage.list_snapshots(WALLET)

        assert len(snapshots) == 1
        assert snapshots[0].kind == SnapshotKind.AUTO_DEPOSIT_TRIGGER
        assert snapshots[0].balance == Decimal("12")
        assert snapshots[0].previous_balance == Decimal("0")
        assert snapshots[0].external_reference == "tx-1"

    def test_per_call_config_override(self, monitor, executor):
        """Test a larger minimum passed per call raises the bar."""
        monitor.evaluate(WALLET, Decimal("0"))
        strict = AutoDepositConfig(min_deposit_amount=Decimal("50"), fee_buffer=Decimal("1"))

        result = monitor.evaluate(WALLET, Decimal("20"), strict)

        assert result.triggered is False
        assert executor.calls == []

    def test_busy_wallet_raises_contention(self, storage, executor, clock):
        """Test an evaluation that cannot get the wallet lock gives up."""
        monitor = BalanceDeltaMonitor(storage, executor, lock_timeout=0.01, clock=clock)
        lock = monitor._lock_for(WALLET)
        lock.acquire()
        try:
            with pytest.raises(ContentionError):
                monitor.evaluate(WALLET, Decimal("20"))
        finally:
            lock.release()
            monitor.close()

    def test_wallets_are_independent(self, monitor, executor):
        """Test watermarks are tracked per wallet."""
        monitor.evaluate("0xa", Decimal("0"))
        monitor.evaluate("0xb", Decimal("100"))

        assert monitor.evaluate("0xa", Decimal("15")).triggered is True
        assert monitor.evaluate("0xb", Decimal("105")).triggered is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
