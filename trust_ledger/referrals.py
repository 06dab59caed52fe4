import re
from typing import Callable, Optional

from .exceptions import (
    ConflictError,
    ContentionError,
    NotFoundError,
    PartialFailureError,
    ReferralNotFoundError,
    SelfReferralError,
    UnrecoverableError,
)
from .logging import get_logger
from .models import ReferralCode, ReferralRedemption, ReferralStatus
from .service import TrustLedger
from .storage import InMemoryStorage, utcnow

logger = get_logger(__name__)

CODE_PREFIX = "REF"
MAX_MINT_ATTEMPTS = 10


def base_code(referrer_id: str) -> str:
    """REF + the first eight alphanumerics of the referrer id, upper-cased."""
    return CODE_PREFIX + re.sub(r"[^A-Za-z0-9]", "", referrer_id)[:8].upper()


class ReferralIssuer:
    """One live referral code per user; redeeming it credits the referrer."""

    def __init__(
        self,
        ledger: TrustLedger,
        storage: InMemoryStorage,
        points_awarded: int = 1,
        clock: Optional[Callable] = None,
    ):
        self.ledger = ledger
        self.storage = storage
        self.points_awarded = points_awarded
        self._now = clock or utcnow

    def generate_code(self, referrer_id: str) -> ReferralCode:
        existing = self.storage.find_unused_code(referrer_id)
        if existing is not None:
            return existing

        base = base_code(referrer_id)
        suffix = len(self.storage.list_referral_codes(referrer_id))
        for _ in range(MAX_MINT_ATTEMPTS):
            code = base if suffix == 0 else f"{base}{suffix}"
            try:
                referral = self.storage.insert_referral_code(ReferralCode(
                    code=code,
                    referrer_id=referrer_id,
                    points_awarded=self.points_awarded,
                    created_at=self._now(),
                ))
            except ConflictError:
                # either the code is taken or a concurrent call already minted one
                existing = self.storage.find_unused_code(referrer_id)
                if existing is not None:
                    return existing
                suffix += 1
                continue
            logger.info("referral.code_generated", referrer_id=referrer_id, code=code)
            return referral

        raise ContentionError(f"Could not mint a unique referral code for {referrer_id}")

    def redeem(self, code: str, redeemer_id: str) -> ReferralRedemption:
        referral = self.storage.get_referral_code(code)
        if referral is None or referral.used:
            raise ReferralNotFoundError(f"Referral code {code} not found or already used")
        if referral.referrer_id == redeemer_id:
            raise SelfReferralError("You cannot redeem your own referral code")

        try:
            used = self.storage.mark_code_used(code, redeemed_by=redeemer_id, used_at=self._now())
        except (ConflictError, NotFoundError) as exc:
            raise ReferralNotFoundError(f"Referral code {code} not found or already used") from exc

        try:
            account = self.ledger.credit(referral.referrer_id, referral.points_awarded)
        except Exception as exc:
            self._release(code, cause=exc)
            raise PartialFailureError(f"Crediting referrer failed; code {code} is redeemable again") from exc

        logger.info(
            "referral.redeemed",
            code=code,
            referrer_id=referral.referrer_id,
            redeemer_id=redeemer_id,
            points=referral.points_awarded,
        )
        return ReferralRedemption(referral=used, referrer_balance=account.balance)

    def status(self, referrer_id: str) -> ReferralStatus:
        codes = self.storage.list_referral_codes(referrer_id)
        active = next((c for c in codes if not c.used), None)
        redeemed = [c for c in codes if c.used]
        return ReferralStatus(
            referrer_id=referrer_id,
            referral_code=active.code if active else None,
            total_referrals=len(redeemed),
            total_points_earned=sum(c.points_awarded for c in redeemed),
            referrals=redeemed,
        )

    def _release(self, code: str, cause: Exception) -> None:
        logger.error("referral.credit_failed", code=code, error=str(cause))
        try:
            self.storage.release_code(code)
        except Exception as exc:
            logger.critical("referral.release_failed", code=code, error=str(exc), cause=str(cause))
            raise UnrecoverableError(
                f"Code {code} is marked used but its referrer was never credited"
            ) from exc
