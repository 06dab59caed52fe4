from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .adapters import NotificationEmitter, TrustScoreAdapter
from .exceptions import (
    ConflictError,
    ExternalUnavailableError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
    PartialFailureError,
    SelfTransferError,
    UnrecoverableError,
    VouchNotFoundError,
)
from .logging import get_logger
from .models import (
    AutoCheckOutcome,
    AutoCheckResult,
    CreditEligibility,
    NotificationKind,
    ReviewResult,
    Vouch,
    VouchBreakdown,
)
from .service import TrustLedger
from .storage import InMemoryStorage, utcnow

logger = get_logger(__name__)


class VouchWorkflow:
    """
    Vouches move through Recorded -> AutoChecked -> Reviewed.

    A vouch only exists if its point transfer succeeded. The auto-check is
    advisory; eligibility is decided by the human review.
    """

    def __init__(
        self,
        ledger: TrustLedger,
        storage: InMemoryStorage,
        trust_scores: Optional[TrustScoreAdapter] = None,
        notifier: Optional[NotificationEmitter] = None,
        min_vouch_trust_score: Decimal = Decimal("1.0"),
        min_trustworthy_vouches: int = 1,
        min_credit_balance: int = 5,
        identity_resolver: Optional[Callable[[str], Optional[str]]] = None,
        clock: Optional[Callable] = None,
    ):
        self.ledger = ledger
        self.storage = storage
        self.trust_scores = trust_scores
        self.notifier = notifier
        self.min_vouch_trust_score = min_vouch_trust_score
        self.min_trustworthy_vouches = min_trustworthy_vouches
        self.min_credit_balance = min_credit_balance
        self.identity_resolver = identity_resolver or storage.get_identity
        self._now = clock or utcnow

    def record_vouch(
        self,
        voucher_id: str,
        vouched_user_id: str,
        points: int,
        message: Optional[str] = None,
    ) -> Vouch:
        if voucher_id == vouched_user_id:
            raise SelfTransferError("You cannot vouch for yourself")

        self.ledger.transfer(voucher_id, vouched_user_id, points)

        vouch = Vouch(
            id=uuid4(),
            voucher_id=voucher_id,
            vouched_user_id=vouched_user_id,
            points_transferred=points,
            message=message,
            created_at=self._now(),
        )
        try:
            stored = self.storage.insert_vouch(vouch)
        except Exception as exc:
            logger.error("vouch.record_failed", voucher_id=voucher_id, vouched_user_id=vouched_user_id, error=str(exc))
            self._reverse_transfer(voucher_id, vouched_user_id, points)
            raise PartialFailureError(
                f"Vouch could not be stored; {points} point(s) returned to {voucher_id}"
            ) from exc

        logger.info(
            "vouch.recorded",
            vouch_id=str(stored.id),
            voucher_id=voucher_id,
            vouched_user_id=vouched_user_id,
            points=points,
        )
        return stored

    def get_vouch(self, vouch_id: UUID) -> Vouch:
        vouch = self.storage.get_vouch(vouch_id)
        if vouch is None:
            raise VouchNotFoundError(f"Vouch {vouch_id} not found")
        return vouch

    def auto_check(self, vouch_id: UUID) -> AutoCheckResult:
        """Score the voucher through the trust-score service and record pass/fail."""
        vouch = self.get_vouch(vouch_id)
        if not vouch.can_auto_check():
            raise InvalidStateTransitionError(f"Cannot auto-check vouch in {vouch.state} state")

        degraded = False
        identity = self.identity_resolver(vouch.voucher_id)
        try:
            if identity is None:
                raise ExternalUnavailableError(f"No linked identity for {vouch.voucher_id}")
            if self.trust_scores is None:
                raise ExternalUnavailableError("No trust score adapter configured", service="maxflow")
            score = self.trust_scores.get_trust_score(identity)
        except ExternalUnavailableError as exc:
            logger.warning("vouch.auto_check_degraded", vouch_id=str(vouch_id), error=str(exc))
            score = Decimal(0)
            degraded = True

        outcome = AutoCheckOutcome.PASS if score >= self.min_vouch_trust_score else AutoCheckOutcome.FAIL
        try:
            updated = self.storage.update_vouch(
                vouch_id,
                expected_reviewed_by=None,
                auto_check=outcome,
                auto_check_score=score,
                auto_checked_at=self._now(),
            )
        except ConflictError as exc:
            raise InvalidStateTransitionError(f"Vouch {vouch_id} was reviewed during the auto-check") from exc

        logger.info("vouch.auto_checked", vouch_id=str(vouch_id), outcome=outcome.value, trust_score=str(score))
        return AutoCheckResult(vouch=updated, outcome=outcome, trust_score=score, degraded=degraded)

    def review(
        self,
        vouch_id: UUID,
        reviewer_id: str,
        is_trustworthy: bool,
        notes: Optional[str] = None,
    ) -> ReviewResult:
        vouch = self.get_vouch(vouch_id)

        if vouch.is_reviewed():
            if vouch.is_trustworthy != is_trustworthy:
                raise InvalidStateTransitionError(
                    f"Vouch {vouch_id} was already reviewed as is_trustworthy={vouch.is_trustworthy}"
                )
            updated = self._update(vouch, vouch.reviewed_by, review_notes=notes)
            count = self.trustworthy_vouches_count(vouch.vouched_user_id)
            eligible = self._is_eligible(vouch.vouched_user_id, count)
            self._record_drop(vouch.vouched_user_id, eligible)
            return ReviewResult(
                vouch=updated,
                vouched_user_eligible=eligible,
                trustworthy_vouches_count=count,
            )

        updated = self._update(
            vouch,
            None,
            is_trustworthy=is_trustworthy,
            reviewed_by=reviewer_id,
            reviewed_at=self._now(),
            review_notes=notes,
        )
        logger.info(
            "vouch.reviewed",
            vouch_id=str(vouch_id),
            reviewer_id=reviewer_id,
            is_trustworthy=is_trustworthy,
        )

        count = self.trustworthy_vouches_count(vouch.vouched_user_id)
        eligible = self._is_eligible(vouch.vouched_user_id, count)
        notified = False
        if is_trustworthy:
            was_eligible = self.storage.swap_eligibility(vouch.vouched_user_id, eligible)
            if eligible and not was_eligible:
                notified = self._notify(
                    vouch.vouched_user_id,
                    NotificationKind.CREDIT_ELIGIBLE,
                    {"trustworthy_vouches_count": count},
                )
        else:
            self._record_drop(vouch.vouched_user_id, eligible)

        return ReviewResult(
            vouch=updated,
            vouched_user_eligible=eligible,
            trustworthy_vouches_count=count,
            notified=notified,
        )

    # -- queries ----------------------------------------------------------

    def received_vouches(self, user_id: str) -> list[Vouch]:
        return self.storage.list_vouches(vouched_user_id=user_id)

    def pending_review(self) -> list[Vouch]:
        return self.storage.list_vouches(reviewed=False)

    def trustworthy_vouches_count(self, user_id: str) -> int:
        return sum(1 for v in self.received_vouches(user_id) if v.is_trustworthy is True)

    def credit_eligibility(self, user_id: str) -> CreditEligibility:
        vouches = self.received_vouches(user_id)
        breakdown = VouchBreakdown(
            trustworthy=sum(1 for v in vouches if v.is_trustworthy is True),
            pending=sum(1 for v in vouches if v.is_trustworthy is None),
            untrustworthy=sum(1 for v in vouches if v.is_trustworthy is False),
            total=len(vouches),
        )
        balance = self.ledger.balance(user_id)
        eligible = self._is_eligible(user_id, breakdown.trustworthy)
        self._record_drop(user_id, eligible)

        reason = None
        if not eligible:
            reason = (
                f"You need at least {self.min_trustworthy_vouches} trustworthy vouch(es) and "
                f"{self.min_credit_balance} trust point(s) to apply for credit. You have "
                f"{breakdown.trustworthy} trustworthy vouch(es) and {balance} point(s)."
            )
        return CreditEligibility(
            user_id=user_id,
            eligible=eligible,
            trustworthy_vouches_count=breakdown.trustworthy,
            total_trust_points=balance,
            breakdown=breakdown,
            reason=reason,
        )

    # -- internals --------------------------------------------------------

    def _is_eligible(self, user_id: str, trustworthy_count: int) -> bool:
        return (
            trustworthy_count >= self.min_trustworthy_vouches
            and self.ledger.balance(user_id) >= self.min_credit_balance
        )

    def _record_drop(self, user_id: str, eligible: bool) -> None:
        """Forget a past crossing once the user falls below the threshold."""
        if not eligible:
            self.storage.swap_eligibility(user_id, False)

    def _update(self, vouch: Vouch, expected_reviewed_by: Optional[str], **changes) -> Vouch:
        try:
            return self.storage.update_vouch(vouch.id, expected_reviewed_by=expected_reviewed_by, **changes)
        except NotFoundError as exc:
            raise VouchNotFoundError(str(exc)) from exc
        except ConflictError as exc:
            raise InvalidStateTransitionError(f"Vouch {vouch.id} was reviewed concurrently") from exc

    def _notify(self, user_id: str, kind: NotificationKind, payload: dict) -> bool:
        if self.notifier is None:
            return False
        try:
            self.notifier.emit(user_id, kind, payload)
        except Exception as exc:
            # delivery is best effort; the review stands
            logger.error("vouch.notification_failed", user_id=user_id, kind=kind.value, error=str(exc))
            return False
        return True

    def _reverse_transfer(self, voucher_id: str, vouched_user_id: str, points: int) -> None:
        try:
            self.ledger.transfer(vouched_user_id, voucher_id, points)
        except LedgerServiceError as exc:
            logger.critical(
                "vouch.reversal_failed",
                voucher_id=voucher_id,
                vouched_user_id=vouched_user_id,
                points=points,
                error=str(exc),
            )
            raise UnrecoverableError(
                f"Could not return {points} point(s) from {vouched_user_id} to {voucher_id}"
            ) from exc
