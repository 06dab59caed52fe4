"""
External collaborators of the trust ledger.

The services only depend on the small protocols below; the concrete
classes talk to the MaxFlow ego-score API, a deposit executor webhook and
the notification table.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Optional, Protocol
from uuid import uuid4

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .cache import ExpiringCache
from .exceptions import ExternalUnavailableError, InvalidIdentityError
from .logging import get_logger
from .models import DepositReceipt, Notification, NotificationKind
from .storage import InMemoryStorage, utcnow

logger = get_logger(__name__)


class TrustScoreAdapter(Protocol):
    def get_trust_score(self, identity: str) -> Decimal: ...

    def get_ego_score(self, address: str) -> dict: ...


class DepositExecutor(Protocol):
    def execute(self, wallet_id: str, amount: Decimal, reference: str) -> DepositReceipt: ...


class NotificationEmitter(Protocol):
    def emit(self, user_id: str, kind: NotificationKind, payload: dict) -> None: ...


def validate_identity(identity: Optional[str]) -> str:
    if not identity or not identity.startswith("0x"):
        raise InvalidIdentityError(
            "Invalid address format. Must be a valid Ethereum address (0x...)"
        )
    return identity


def compute_trust_score(ego_score: dict) -> Decimal:
    """Collapse a MaxFlow ego score into a single non-negative trust score."""
    metrics = ego_score["metrics"]
    local_health = Decimal(str(ego_score["localHealth"]))
    residual_flow = Decimal(str(metrics["avgResidualFlow"]))
    min_cut = Decimal(str(metrics["medianMinCut"]))
    accepted_ratio = Decimal(str(metrics["acceptedUsers"])) / max(Decimal(str(metrics["totalNodes"])), Decimal(1))

    score = (
        local_health * Decimal("0.4")
        + residual_flow * Decimal("0.3")
        + min_cut * Decimal("0.2")
        + accepted_ratio * Decimal("0.1")
    )
    return max(Decimal(0), score)


class MaxFlowTrustScoreClient:
    """Ego-score lookups against the MaxFlow API, cached per address."""

    def __init__(
        self,
        api_url: str = "https://maxflow.one",
        timeout: float = 30.0,
        max_attempts: int = 2,
        cache: Optional[ExpiringCache] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.max_attempts = max_attempts
        self._cache = cache if cache is not None else ExpiringCache(timedelta(minutes=5))
        self._client = http_client or httpx.Client(
            base_url=api_url,
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json"},
        )

    def get_ego_score(self, address: str) -> dict:
        validate_identity(address)
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, max=4),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        try:
            response = retrying(self._client.get, f"/api/ego/{address}/score")
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("maxflow.request_failed", address=address, error=str(exc))
            raise ExternalUnavailableError(f"MaxFlow request failed: {exc}", service="maxflow") from exc

    def get_trust_score(self, identity: str) -> Decimal:
        cached = self._cache.get(identity)
        if cached is not None:
            return cached
        ego_score = self.get_ego_score(identity)
        try:
            score = compute_trust_score(ego_score)
        except (KeyError, TypeError, ArithmeticError) as exc:
            raise ExternalUnavailableError(f"Malformed ego score for {identity}", service="maxflow") from exc
        self._cache.set(identity, score)
        return score

    def close(self) -> None:
        self._client.close()


class HttpDepositExecutor:
    """Posts deposit instructions to the yield-strategy service."""

    def __init__(self, url: str, timeout: float = 60.0, http_client: Optional[httpx.Client] = None):
        self.url = url
        self._client = http_client or httpx.Client(timeout=httpx.Timeout(timeout))

    def execute(self, wallet_id: str, amount: Decimal, reference: str) -> DepositReceipt:
        try:
            response = self._client.post(
                self.url,
                json={"wallet_id": wallet_id, "amount": str(amount), "reference": reference},
                headers={"Idempotency-Key": reference},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalUnavailableError(f"Deposit executor failed: {exc}", service="deposit") from exc

        return DepositReceipt(
            success=bool(body.get("success")),
            transaction_reference=body.get("transaction_reference"),
            error=body.get("error"),
        )


NOTIFICATION_TEXT = {
    NotificationKind.CREDIT_ELIGIBLE: (
        "You are eligible for credit!",
        "You now have {trustworthy_vouches_count} trustworthy vouch(es). You can apply for credit.",
    ),
}


class StoredNotificationEmitter:
    """Writes notifications to storage for the client to poll."""

    def __init__(self, storage: InMemoryStorage, clock=None):
        self.storage = storage
        self._now = clock or utcnow

    def emit(self, user_id: str, kind: NotificationKind, payload: dict) -> None:
        title, template = NOTIFICATION_TEXT[kind]
        self.storage.add_notification(Notification(
            id=uuid4(),
            user_id=user_id,
            kind=kind,
            title=title,
            message=template.format(**payload),
            payload=payload,
            created_at=self._now(),
        ))
