import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from billing.config import Settings
from billing.errors import InvalidRequest, NotCompleted, ProviderUnavailable
from billing.schemas import PaymentMethod

logger = logging.getLogger(__name__)


@dataclass
class CheckoutOrder:
    order_id: str
    amount: float
    currency: str
    description: str
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    days: Optional[int] = None
    credits: int = 0
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    # bumped when an expired checkout session is opened again
    attempt: int = 1


@dataclass
class CreatedPayment:
    provider_ref: str
    redirect_url: Optional[str] = None
    qr_payload: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Confirmation:
    """Normalized answer from a capture or query call."""

    completed: bool
    state: str
    provider_txn_id: Optional[str] = None
    order_ref: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    days: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None
    auto_renew: Optional[bool] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    method: PaymentMethod

    def __init__(self, settings: Settings, http: Optional[httpx.Client] = None):
        self.settings = settings
        self.http = http or httpx.Client(timeout=settings.provider_timeout)

    @abstractmethod
    def create(self, order: CheckoutOrder) -> CreatedPayment:
        ...

    @abstractmethod
    def query(self, reference: str) -> Confirmation:
        ...

    def capture(self, reference: str) -> Confirmation:
        raise InvalidRequest(f"{self.method.value} payments do not need capture")

    def confirm(self, reference: str) -> Confirmation:
        confirmation = self.query(reference)
        if not confirmation.completed:
            raise NotCompleted("Payment not completed", provider=self.method.value, state=confirmation.state)
        return confirmation

    def send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = self.http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("%s request timed out", self.method.value, extra={"url": url})
            raise ProviderUnavailable(f"{self.method.value} timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("%s transport error: %s", self.method.value, exc, extra={"url": url})
            raise ProviderUnavailable(f"{self.method.value} unreachable") from exc
        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(
                "%s returned %s", self.method.value, response.status_code, extra={"url": url, "body": response.text[:200]}
            )
            raise ProviderUnavailable(f"{self.method.value} returned {response.status_code}")
        return response

    def close(self) -> None:
        self.http.close()


def to_amount(value: Any) -> Optional[float]:
    try:
        return round(float(value), 2) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None
