"""
Unit Tests for Referral Codes

Tests cover:
1. Code generation and idempotency
2. Collision handling between referrers
3. Redemption, single use and self-referral
4. Releasing a code when the referrer cannot be credited
"""

import pytest

from trust_ledger.exceptions import (
    PartialFailureError,
    ReferralNotFoundError,
    SelfReferralError,
    StorageError,
)
from trust_ledger.referrals import ReferralIssuer, base_code
from trust_ledger.service import TrustLedger
from trust_ledger.storage import InMemoryStorage


REFERRER = "alice-01"
FRIEND = "bob"


@pytest.fixture
def issuer(ledger, storage, clock):
    return ReferralIssuer(ledger, storage, clock=clock)


class TestGenerateCode:
    """Tests for minting referral codes."""

    def test_code_format(self):
        """Test the code is REF plus the first eight alphanumerics, upper-cased."""
        assert base_code("alice-01") == "REFALICE01"
        assert base_code("550e8400-e29b-41d4") == "REF550E8400"

    def test_generate_is_idempotent(self, issuer):
        """Test asking twice returns the same unused code."""
        first = issuer.generate_code(REFERRER)
        second = issuer.generate_code(REFERRER)

        assert first.code == second.code == "REFALICE01"
        assert first.used is False
        assert first.points_awarded == 1

    def test_colliding_prefixes_get_distinct_codes(self, issuer):
        """Test two referrers with the same prefix do not share a code."""
        first = issuer.generate_code("longname-a")
        second = issuer.generate_code("longname-b")

        assert first.code == "REFLONGNAME"
        assert second.code == "REFLONGNAME1"
        assert second.referrer_id == "longname-b"

    def test_new_code_after_redemption(self, issuer):
        """Test a fresh code is minted once the previous one was used."""
        first = issuer.generate_code(REFERRER)
        issuer.redeem(first.code, FRIEND)

        second = issuer.generate_code(REFERRER)

        assert second.code != first.code
        assert second.used is False


class TestRedeem:
    """Tests for redeeming referral codes."""

    def test_redeem_credits_referrer(self, issuer, ledger):
        """Test redemption marks the code used and credits the referrer."""
        code = issuer.generate_code(REFERRER).code

        redemption = issuer.redeem(code, FRIEND)

        assert redemption.referral.used is True
        assert redemption.referral.redeemed_by == FRIEND
        assert redemption.referral.used_at is not None
        assert redemption.referrer_balance == 1
        assert ledger.balance(REFERRER) == 1

    def test_code_redeems_once(self, issuer, ledger):
        """Test a used code cannot be redeemed again."""
        code = issuer.generate_code(REFERRER).code
        issuer.redeem(code, FRIEND)

        with pytest.raises(ReferralNotFoundError):
            issuer.redeem(code, "carol")

        assert ledger.balance(REFERRER) == 1

    def test_unknown_code(self, issuer):
        """Test redeeming a code that was never issued fails."""
        with pytest.raises(ReferralNotFoundError):
            issuer.redeem("REFNOPE", FRIEND)

    def test_self_referral_rejected(self, issuer, ledger, storage):
        """Test the referrer cannot redeem their own code."""
        code = issuer.generate_code(REFERRER).code

        with pytest.raises(SelfReferralError):
            issuer.redeem(code, REFERRER)

        assert storage.get_referral_code(code).used is False
        assert ledger.balance(REFERRER) == 0

    def test_failed_credit_releases_code(self, clock):
        """Test the code becomes redeemable again when crediting fails."""

        class ReferrerWriteFails(InMemoryStorage):
            def upsert_balance(self, user_id, new_balance, *args, **kwargs):
                if user_id == REFERRER:
                    raise StorageError("accounts table locked")
                return super().upsert_balance(user_id, new_balance, *args, **kwargs)

        storage = ReferrerWriteFails(clock=clock)
        issuer = ReferralIssuer(TrustLedger(storage, clock=clock), storage, clock=clock)
        code = issuer.generate_code(REFERRER).code

        with pytest.raises(PartialFailureError):
            issuer.redeem(code, FRIEND)

        released = storage.get_referral_code(code)
        assert released.used is False
        assert released.redeemed_by is None

    def test_release_retires_newer_unused_code(self, storage, clock):
        """Test releasing a code drops any code minted for the referrer in the meantime."""
        issuer = ReferralIssuer(TrustLedger(storage, clock=clock), storage, clock=clock)
        original = issuer.generate_code(REFERRER).code
        storage.mark_code_used(original, redeemed_by=FRIEND, used_at=clock())
        newer = issuer.generate_code(REFERRER).code
        assert newer != original

        storage.release_code(original)

        assert storage.get_referral_code(newer) is None
        assert storage.find_unused_code(REFERRER).code == original
        assert [c.code for c in storage.list_referral_codes(REFERRER)] == [original]

    def test_code_minted_during_failed_credit(self, storage, clock):
        """Test a code generated while the credit is in flight does not survive the release."""

        class MintThenFailLedger:
            issuer = None

            def credit(self, user_id, amount):
                self.issuer.generate_code(user_id)
                raise StorageError("accounts table locked")

        ledger = MintThenFailLedger()
        issuer = ReferralIssuer(ledger, storage, clock=clock)
        ledger.issuer = issuer
        code = issuer.generate_code(REFERRER).code

        with pytest.raises(PartialFailureError):
            issuer.redeem(code, FRIEND)

        unused = [c for c in storage.list_referral_codes(REFERRER) if not c.used]
        assert [c.code for c in unused] == [code]
        assert issuer.generate_code(REFERRER).code == code

    def test_status(self, issuer):
        """Test the referral summary lists redeemed codes and the live one."""
        first = issuer.generate_code(REFERRER)
        issuer.redeem(first.code, FRIEND)
        live = issuer.generate_code(REFERRER)

        status = issuer.status(REFERRER)

        assert status.referral_code == live.code
        assert status.total_referrals == 1
        assert status.total_points_earned == 1
        assert [r.code for r in status.referrals] == [first.code]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
