"""
Auto-deposit monitor.

Each balance reading for a wallet is compared with the last reconciled
balance (the watermark). A large enough increase triggers one deposit into
the yield strategy; the watermark only moves past that increase once the
deposit executor confirms it, so a failed deposit is retried on the next
reading and a confirmed one is never repeated.

After a confirmed deposit the watermark holds the expected post-deposit
balance. The balance source is eventually consistent, so re-reading the exact
balance that fired the deposit is treated as stale and ignored.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from decimal import Decimal
from typing import Callable, Optional
from uuid import NAMESPACE_URL, uuid5

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .adapters import DepositExecutor
from .exceptions import ContentionError, ExternalUnavailableError
from .logging import get_logger
from .models import (
    AutoDepositConfig,
    BalanceSnapshot,
    BalanceWatermark,
    DepositReceipt,
    DepositTrigger,
    SnapshotKind,
)
from .storage import InMemoryStorage, utcnow

logger = get_logger(__name__)


def deposit_due(delta: Decimal, observed_balance: Decimal, config: AutoDepositConfig) -> bool:
    return (
        delta >= config.min_deposit_amount
        and observed_balance >= config.min_deposit_amount + config.fee_buffer
    )


def idempotency_key(watermark: BalanceWatermark) -> str:
    """Stable for as long as the watermark does not move."""
    observed_at = watermark.observed_at.isoformat() if watermark.observed_at else ""
    name = f"{watermark.wallet_id}:{watermark.previous_observed_balance}:{observed_at}"
    return str(uuid5(NAMESPACE_URL, name))


class BalanceDeltaMonitor:
    def __init__(
        self,
        storage: InMemoryStorage,
        executor: DepositExecutor,
        config: Optional[AutoDepositConfig] = None,
        max_attempts: int = 3,
        retry_delay: float = 5.0,
        call_timeout: float = 60.0,
        lock_timeout: float = 90.0,
        clock: Optional[Callable] = None,
    ):
        self.storage = storage
        self.executor = executor
        self.config = config or AutoDepositConfig()
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.call_timeout = call_timeout
        self.lock_timeout = lock_timeout
        self._now = clock or utcnow
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="deposit")

    def evaluate(
        self,
        wallet_id: str,
        observed_balance: Decimal,
        config: Optional[AutoDepositConfig] = None,
    ) -> DepositTrigger:
        observed = Decimal(str(observed_balance))
        lock = self._lock_for(wallet_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise ContentionError(f"Another evaluation for wallet {wallet_id} is still running")
        try:
            return self._evaluate(wallet_id, observed, config or self.config)
        finally:
            lock.release()

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    def _lock_for(self, wallet_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(wallet_id, threading.Lock())

    def _evaluate(self, wallet_id: str, observed: Decimal, config: AutoDepositConfig) -> DepositTrigger:
        watermark = self.storage.get_watermark(wallet_id)

        if not watermark.is_initialized():
            self.storage.save_watermark(wallet_id, observed, self._now())
            logger.info("monitor.watermark_initialized", wallet_id=wallet_id, balance=str(observed))
            return DepositTrigger(triggered=False)

        if observed == watermark.last_triggered_balance:
            # the source has not caught up with our own deposit yet
            logger.debug("monitor.stale_reading", wallet_id=wallet_id, balance=str(observed))
            return DepositTrigger(triggered=False)

        previous = watermark.previous_observed_balance
        delta = observed - previous
        if not deposit_due(delta, observed, config):
            self.storage.save_watermark(wallet_id, observed, self._now())
            logger.debug("monitor.no_deposit", wallet_id=wallet_id, delta=str(delta))
            return DepositTrigger(triggered=False)

        amount = config.min_deposit_amount
        key = idempotency_key(watermark)
        logger.info(
            "monitor.deposit_triggered",
            wallet_id=wallet_id,
            previous_balance=str(previous),
            observed_balance=str(observed),
            deposit_amount=str(amount),
            idempotency_key=key,
        )

        try:
            receipt = self._deposit_with_retry(wallet_id, amount, key)
        except ExternalUnavailableError as exc:
            logger.error("monitor.deposit_failed", wallet_id=wallet_id, error=str(exc), idempotency_key=key)
            self._snapshot(wallet_id, observed, previous, amount, None, SnapshotKind.AUTO_DEPOSIT_FAILED)
            return DepositTrigger(
                triggered=True,
                deposit_amount=amount,
                idempotency_key=key,
                error=str(exc),
            )

        self.storage.save_watermark(
            wallet_id, observed - amount, self._now(), last_triggered_balance=observed
        )
        self._snapshot(
            wallet_id, observed, previous, amount,
            receipt.transaction_reference, SnapshotKind.AUTO_DEPOSIT_TRIGGER,
        )
        logger.info(
            "monitor.deposit_succeeded",
            wallet_id=wallet_id,
            transaction_reference=receipt.transaction_reference,
        )
        return DepositTrigger(
            triggered=True,
            deposit_amount=amount,
            external_reference=receipt.transaction_reference,
            idempotency_key=key,
        )

    def _deposit_with_retry(self, wallet_id: str, amount: Decimal, key: str) -> DepositReceipt:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(ExternalUnavailableError),
            reraise=True,
        )
        return retrying(self._deposit_once, wallet_id, amount, key)

    def _deposit_once(self, wallet_id: str, amount: Decimal, key: str) -> DepositReceipt:
        future = self._pool.submit(self.executor.execute, wallet_id, amount, key)
        try:
            receipt = future.result(timeout=self.call_timeout)
        except FuturesTimeoutError as exc:
            future.cancel()
            raise ExternalUnavailableError(
                f"Deposit executor timed out after {self.call_timeout}s", service="deposit"
            ) from exc
        except ExternalUnavailableError:
            raise
        except Exception as exc:
            raise ExternalUnavailableError(f"Deposit executor error: {exc}", service="deposit") from exc

        if not receipt.success:
            raise ExternalUnavailableError(
                receipt.error or "Deposit executor reported failure", service="deposit"
            )
        return receipt

    def _snapshot(self, wallet_id, balance, previous, amount, reference, kind) -> None:
        self.storage.add_snapshot(BalanceSnapshot(
            wallet_id=wallet_id,
            balance=balance,
            previous_balance=previous,
            deposit_amount=amount,
            external_reference=reference,
            kind=kind,
            recorded_at=self._now(),
        ))
