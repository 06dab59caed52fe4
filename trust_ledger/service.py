from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional, Sequence

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt

from .adapters import TrustScoreAdapter, validate_identity
from .exceptions import (
    ConflictError,
    ContentionError,
    ExternalUnavailableError,
    InsufficientFundsError,
    InvalidAmountError,
    PartialFailureError,
    SelfTransferError,
    TooSoonError,
    UnrecoverableError,
)
from .logging import get_logger
from .models import Account, InitializationResult, TransferResult
from .storage import AccountStore, utcnow

logger = get_logger(__name__)

# (minimum trust score, initial points), checked highest first
DEFAULT_SCORE_TIERS: tuple[tuple[Decimal, int], ...] = (
    (Decimal("1.5"), 15),
    (Decimal("1.0"), 10),
    (Decimal("0.5"), 7),
)


def tier_for(score: Decimal, tier_thresholds: Sequence[tuple[Decimal, int]] = DEFAULT_SCORE_TIERS) -> int:
    for minimum, points in sorted(tier_thresholds, key=lambda tier: tier[0], reverse=True):
        if score >= minimum:
            return points
    return 0


def validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(f"Amount must be a positive integer, got {amount!r}")
    return amount


class TrustLedger:
    """
    Trust-point balances and the operations allowed to change them.

    Every write is a compare-and-set against the balance just read, retried
    with a fresh read up to `max_attempts` times. Transfers debit first and
    credit second; a failed credit puts the points back on the sender.
    """

    def __init__(
        self,
        store: AccountStore,
        max_attempts: int = 3,
        trust_scores: Optional[TrustScoreAdapter] = None,
        tier_thresholds: Sequence[tuple[Decimal, int]] = DEFAULT_SCORE_TIERS,
        initialization_grace: timedelta = timedelta(hours=1),
        clock: Optional[Callable] = None,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.trust_scores = trust_scores
        self.tier_thresholds = tuple(tier_thresholds)
        self.initialization_grace = initialization_grace
        self._now = clock or utcnow

    # -- reads ------------------------------------------------------------

    def get_account(self, user_id: str) -> Account:
        return self.store.get(user_id) or self.store.ensure_account(user_id)

    def balance(self, user_id: str) -> int:
        account = self.store.get(user_id)
        return account.balance if account else 0

    def total_supply(self) -> int:
        return self.store.total_supply()

    # -- transfers --------------------------------------------------------

    def transfer(self, from_user_id: str, to_user_id: str, amount: int) -> TransferResult:
        validate_amount(amount)
        if from_user_id == to_user_id:
            raise SelfTransferError("Cannot transfer trust points to yourself")

        sender = self._retry_on_conflict(self._debit_once, from_user_id, amount)
        try:
            receiver = self._retry_on_conflict(self._credit_once, to_user_id, amount)
        except Exception as exc:
            self._compensate(from_user_id, amount, cause=exc)
            raise PartialFailureError(
                f"Credit to {to_user_id} failed; {amount} point(s) returned to {from_user_id}"
            ) from exc

        logger.info(
            "ledger.transfer_completed",
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=amount,
        )
        return TransferResult(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=amount,
            sender_balance=sender.balance,
            receiver_balance=receiver.balance,
        )

    def credit(self, user_id: str, amount: int) -> Account:
        validate_amount(amount)
        account = self._retry_on_conflict(self._credit_once, user_id, amount)
        logger.info("ledger.credited", user_id=user_id, amount=amount, balance=account.balance)
        return account

    # -- grants -----------------------------------------------------------

    def grant_daily(self, user_id: str, grant_amount: int, min_interval_hours: float) -> Account:
        validate_amount(grant_amount)

        def attempt() -> Account:
            account = self.store.ensure_account(user_id)
            now = self._now()
            last_credit = account.last_daily_credit_at
            if last_credit is not None:
                hours_since = (now - last_credit).total_seconds() / 3600
                if hours_since < min_interval_hours:
                    raise TooSoonError(
                        f"Daily points can only be claimed once every {min_interval_hours:g} hours",
                        hours_remaining=min_interval_hours - hours_since,
                    )
            return self.store.upsert_balance(
                user_id,
                account.balance + grant_amount,
                expected_prior_balance=account.balance,
                last_daily_credit_at=now,
                expected_last_daily_credit_at=last_credit,
            )

        account = self._retry_on_conflict(attempt)
        logger.info("ledger.daily_granted", user_id=user_id, amount=grant_amount, balance=account.balance)
        return account

    def initialize_from_external_score(
        self,
        user_id: str,
        score: Decimal,
        tier_thresholds: Optional[Sequence[tuple[Decimal, int]]] = None,
    ) -> InitializationResult:
        """
        Raise the balance to the tier earned by `score`, never lowering it.

        Accounts older than the grace window are left alone: by then the
        balance reflects organic activity and re-granting would mint points.
        """
        score = Decimal(str(score))
        tier_points = tier_for(score, tier_thresholds or self.tier_thresholds)

        def attempt() -> InitializationResult:
            existing = self.store.get(user_id)
            if existing is not None and self._past_grace(existing):
                return InitializationResult(
                    user_id=user_id,
                    balance=existing.balance,
                    trust_score=score,
                    initial_allocation=tier_points,
                    already_initialized=True,
                )
            account = existing or self.store.ensure_account(user_id)
            if tier_points > account.balance:
                account = self.store.upsert_balance(
                    user_id, tier_points, expected_prior_balance=account.balance
                )
            return InitializationResult(
                user_id=user_id,
                balance=account.balance,
                trust_score=score,
                initial_allocation=tier_points,
            )

        result = self._retry_on_conflict(attempt)
        logger.info(
            "ledger.initialized_from_score",
            user_id=user_id,
            trust_score=str(score),
            initial_allocation=tier_points,
            balance=result.balance,
            already_initialized=result.already_initialized,
        )
        return result

    def initialize_from_identity(self, user_id: str, identity: str) -> InitializationResult:
        """Fetch the ego score for `identity` and initialize from it; outages count as score 0."""
        validate_identity(identity)
        existing = self.store.get(user_id)
        if existing is not None and self._past_grace(existing):
            return InitializationResult(
                user_id=user_id,
                balance=existing.balance,
                trust_score=Decimal(0),
                initial_allocation=0,
                already_initialized=True,
            )

        degraded = False
        try:
            if self.trust_scores is None:
                raise ExternalUnavailableError("No trust score adapter configured", service="maxflow")
            score = self.trust_scores.get_trust_score(identity)
        except ExternalUnavailableError as exc:
            logger.warning("ledger.trust_score_unavailable", user_id=user_id, error=str(exc))
            score = Decimal(0)
            degraded = True

        result = self.initialize_from_external_score(user_id, score)
        return result.model_copy(update={"degraded": degraded})

    # -- internals --------------------------------------------------------

    def _past_grace(self, account: Account) -> bool:
        return self._now() - account.created_at > self.initialization_grace

    def _retry_on_conflict(self, operation, *args):
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type(ConflictError),
        )
        try:
            return retrying(operation, *args)
        except RetryError as exc:
            logger.warning("ledger.contention", operation=getattr(operation, "__name__", "attempt"), attempts=self.max_attempts)
            raise ContentionError(f"Balance kept changing; gave up after {self.max_attempts} attempts") from exc

    def _debit_once(self, user_id: str, amount: int) -> Account:
        account = self.store.get(user_id)
        if account is None or account.balance < amount:
            available = account.balance if account else 0
            raise InsufficientFundsError(
                f"User {user_id} has {available} point(s), {amount} required"
            )
        return self.store.upsert_balance(
            user_id, account.balance - amount, expected_prior_balance=account.balance
        )

    def _credit_once(self, user_id: str, amount: int) -> Account:
        account = self.store.ensure_account(user_id)
        return self.store.upsert_balance(
            user_id, account.balance + amount, expected_prior_balance=account.balance
        )

    def _compensate(self, user_id: str, amount: int, cause: Exception) -> None:
        logger.error("ledger.credit_failed", user_id=user_id, amount=amount, error=str(cause))
        try:
            self._retry_on_conflict(self._credit_once, user_id, amount)
        except Exception as exc:
            logger.critical(
                "ledger.compensation_failed",
                user_id=user_id,
                amount=amount,
                error=str(exc),
                cause=str(cause),
            )
            raise UnrecoverableError(
                f"Could not return {amount} point(s) to {user_id}; manual reconciliation required"
            ) from exc
        logger.warning("ledger.compensated", user_id=user_id, amount=amount)
