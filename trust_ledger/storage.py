import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID

from .exceptions import ConflictError, NotFoundError
from .models import (
    Account,
    BalanceSnapshot,
    BalanceWatermark,
    Notification,
    ReferralCode,
    Vouch,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Marks "no expectation" where None is itself a meaningful expected value
UNSET = object()


class AccountStore(Protocol):
    """Balance storage with optimistic concurrency on every write."""

    def get(self, user_id: str) -> Optional[Account]: ...

    def ensure_account(self, user_id: str) -> Account: ...

    def upsert_balance(
        self,
        user_id: str,
        new_balance: int,
        expected_prior_balance: Optional[int] = None,
        last_daily_credit_at: Optional[datetime] = None,
        expected_last_daily_credit_at=UNSET,
    ) -> Account: ...

    def total_supply(self) -> int: ...


class InMemoryStorage:
    """
    Process-local store for accounts, vouches, referral codes and watermarks.

    Every conditional write checks and mutates under one short lock, which is
    what a row-level `UPDATE ... WHERE balance = :expected` gives a real
    database. Callers never see the internal dicts, only fresh models.
    """

    def __init__(self, clock=None):
        self._now = clock or utcnow
        self._lock = threading.RLock()
        self.accounts: dict[str, dict] = {}
        self.vouches: dict[UUID, dict] = {}
        self.referral_codes: dict[str, dict] = {}
        self.watermarks: dict[str, dict] = {}
        self.snapshots: list[dict] = []
        self.notifications: dict[UUID, dict] = {}
        self.identities: dict[str, str] = {}
        self.eligibility: dict[str, bool] = {}

    # -- accounts ---------------------------------------------------------

    def get(self, user_id: str) -> Optional[Account]:
        with self._lock:
            row = self.accounts.get(user_id)
            return Account(**row) if row else None

    def ensure_account(self, user_id: str) -> Account:
        with self._lock:
            row = self.accounts.get(user_id)
            if row is None:
                now = self._now()
                row = {
                    "user_id": user_id, "balance": 0,
                    "last_daily_credit_at": None,
                    "created_at": now, "updated_at": now,
                }
                self.accounts[user_id] = row
            return Account(**row)

    def upsert_balance(
        self,
        user_id: str,
        new_balance: int,
        expected_prior_balance: Optional[int] = None,
        last_daily_credit_at: Optional[datetime] = None,
        expected_last_daily_credit_at=UNSET,
    ) -> Account:
        if new_balance < 0:
            raise ValueError(f"Balance for {user_id} cannot go negative ({new_balance})")
        with self._lock:
            row = self.accounts.get(user_id)
            if expected_prior_balance is not None:
                actual = row["balance"] if row else None
                if actual != expected_prior_balance:
                    raise ConflictError(f"account:{user_id}", expected_prior_balance, actual)
            if expected_last_daily_credit_at is not UNSET:
                actual_stamp = row["last_daily_credit_at"] if row else None
                if actual_stamp != expected_last_daily_credit_at:
                    raise ConflictError(f"daily_credit:{user_id}", expected_last_daily_credit_at, actual_stamp)
            now = self._now()
            if row is None:
                row = {
                    "user_id": user_id, "balance": 0,
                    "last_daily_credit_at": None, "created_at": now,
                }
                self.accounts[user_id] = row
            row["balance"] = new_balance
            row["updated_at"] = now
            if last_daily_credit_at is not None:
                row["last_daily_credit_at"] = last_daily_credit_at
            return Account(**row)

    def total_supply(self) -> int:
        with self._lock:
            return sum(row["balance"] for row in self.accounts.values())

    # -- identities -------------------------------------------------------

    def link_identity(self, user_id: str, identity: str) -> None:
        with self._lock:
            self.identities[user_id] = identity

    def get_identity(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self.identities.get(user_id)

    # -- vouches ----------------------------------------------------------

    def insert_vouch(self, vouch: Vouch) -> Vouch:
        with self._lock:
            if vouch.id in self.vouches:
                raise ConflictError(f"vouch:{vouch.id}", None, vouch.id)
            self.vouches[vouch.id] = vouch.model_dump()
            return Vouch(**self.vouches[vouch.id])

    def get_vouch(self, vouch_id: UUID) -> Optional[Vouch]:
        with self._lock:
            row = self.vouches.get(vouch_id)
            return Vouch(**row) if row else None

    def update_vouch(self, vouch_id: UUID, expected_reviewed_by: Optional[str], **changes) -> Vouch:
        """Apply `changes` only if the stored reviewer is still `expected_reviewed_by`."""
        with self._lock:
            row = self.vouches.get(vouch_id)
            if row is None:
                raise NotFoundError(f"Vouch {vouch_id} not found")
            if row["reviewed_by"] != expected_reviewed_by:
                raise ConflictError(f"vouch:{vouch_id}", expected_reviewed_by, row["reviewed_by"])
            row.update(changes)
            return Vouch(**row)

    def list_vouches(self, vouched_user_id: Optional[str] = None, reviewed: Optional[bool] = None) -> list[Vouch]:
        with self._lock:
            rows = list(self.vouches.values())
        if vouched_user_id is not None:
            rows = [r for r in rows if r["vouched_user_id"] == vouched_user_id]
        if reviewed is not None:
            rows = [r for r in rows if (r["reviewed_by"] is not None) == reviewed]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [Vouch(**r) for r in rows]

    def swap_eligibility(self, user_id: str, eligible: bool) -> bool:
        """Store the user's eligibility flag and return the previous one."""
        with self._lock:
            previous = self.eligibility.get(user_id, False)
            self.eligibility[user_id] = eligible
            return previous

    # -- referral codes ---------------------------------------------------

    def get_referral_code(self, code: str) -> Optional[ReferralCode]:
        with self._lock:
            row = self.referral_codes.get(code)
            return ReferralCode(**row) if row else None

    def find_unused_code(self, referrer_id: str) -> Optional[ReferralCode]:
        with self._lock:
            for row in self.referral_codes.values():
                if row["referrer_id"] == referrer_id and not row["used"]:
                    return ReferralCode(**row)
        return None

    def list_referral_codes(self, referrer_id: str) -> list[ReferralCode]:
        with self._lock:
            rows = [r for r in self.referral_codes.values() if r["referrer_id"] == referrer_id]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [ReferralCode(**r) for r in rows]

    def insert_referral_code(self, referral: ReferralCode) -> ReferralCode:
        with self._lock:
            if referral.code in self.referral_codes:
                raise ConflictError(f"referral:{referral.code}", None, referral.code)
            existing = self.find_unused_code(referral.referrer_id)
            if existing is not None:
                raise ConflictError(f"referrer:{referral.referrer_id}", None, existing.code)
            self.referral_codes[referral.code] = referral.model_dump()
            return ReferralCode(**self.referral_codes[referral.code])

    def mark_code_used(self, code: str, redeemed_by: str, used_at: datetime) -> ReferralCode:
        with self._lock:
            row = self.referral_codes.get(code)
            if row is None:
                raise NotFoundError(f"Referral code {code} not found")
            if row["used"]:
                raise ConflictError(f"referral:{code}", False, True)
            row.update(used=True, used_at=used_at, redeemed_by=redeemed_by)
            return ReferralCode(**row)

    def release_code(self, code: str) -> ReferralCode:
        """Make a used code redeemable again, retiring any code minted for the referrer since."""
        with self._lock:
            row = self.referral_codes[code]
            newer = [
                other for other, r in self.referral_codes.items()
                if other != code and r["referrer_id"] == row["referrer_id"] and not r["used"]
            ]
            for other in newer:
                del self.referral_codes[other]
            row.update(used=False, used_at=None, redeemed_by=None)
            return ReferralCode(**row)

    # -- watermarks -------------------------------------------------------

    def get_watermark(self, wallet_id: str) -> BalanceWatermark:
        with self._lock:
            row = self.watermarks.get(wallet_id)
            if row is None:
                return BalanceWatermark(wallet_id=wallet_id)
            return BalanceWatermark(**row)

    def save_watermark(
        self,
        wallet_id: str,
        balance: Decimal,
        observed_at: datetime,
        last_triggered_balance: Optional[Decimal] = None,
    ) -> BalanceWatermark:
        with self._lock:
            self.watermarks[wallet_id] = {
                "wallet_id": wallet_id,
                "previous_observed_balance": balance,
                "observed_at": observed_at,
                "last_triggered_balance": last_triggered_balance,
            }
            return BalanceWatermark(**self.watermarks[wallet_id])

    def add_snapshot(self, snapshot: BalanceSnapshot) -> None:
        with self._lock:
            self.snapshots.append(snapshot.model_dump())

    def list_snapshots(self, wallet_id: str) -> list[BalanceSnapshot]:
        with self._lock:
            return [BalanceSnapshot(**s) for s in self.snapshots if s["wallet_id"] == wallet_id]

    # -- notifications ----------------------------------------------------

    def add_notification(self, notification: Notification) -> Notification:
        with self._lock:
            self.notifications[notification.id] = notification.model_dump()
            return notification

    def list_notifications(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        with self._lock:
            rows = [n for n in self.notifications.values() if n["user_id"] == user_id]
        if unread_only:
            rows = [n for n in rows if not n["read"]]
        rows.sort(key=lambda n: n["created_at"], reverse=True)
        return [Notification(**n) for n in rows]

    def mark_notification_read(self, notification_id: UUID, read: bool = True) -> Notification:
        with self._lock:
            row = self.notifications.get(notification_id)
            if row is None:
                raise NotFoundError(f"Notification {notification_id} not found")
            row["read"] = read
            return Notification(**row)
