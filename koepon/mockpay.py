from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple, TypedDict
import base64
import hashlib
import hmac
import json
import time
import uuid

from .errors import ValidationError


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateIntentResult(TypedDict):
    intent_id: str
    client_secret: str
    status: str


class ConfirmOutcome(TypedDict):
    intent_id: str
    # "succeeded" | "processing" | "failed" | "requires_action"
    status: str
    error: Optional[str]


def intent_id_from_client_secret(client_secret: str) -> str:
    # "<intent id>_secret_<nonce>", same shape as the provider's secrets
    intent_id, sep, _ = client_secret.partition("_secret_")
    if not sep or not intent_id:
        raise ValidationError("invalid client secret")
    return intent_id


class PaymentAdapter(ABC):
    name = "abstract"

    @abstractmethod
    async def create_intent(
        self, amount: int, currency: str, metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> CreateIntentResult: ...

    @abstractmethod
    async def confirm_intent(
        self, intent_id: str, payment_method: str
    ) -> ConfirmOutcome: ...

    # provider-side status, None when the provider keeps no state for us
    @abstractmethod
    async def retrieve_status(self, intent_id: str) -> Optional[str]: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment_intent_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


# ----------------------------
# MockPay implementation
# ----------------------------
# test payment methods that the mock provider declines
DECLINED_METHODS = {
    "pm_card_chargeDeclined": "Your card was declined.",
    "pm_card_insufficientFunds": "Your card has insufficient funds.",
    "pm_card_expired": "Your card has expired.",
}


class MockPay(PaymentAdapter):
    """Stateless stand-in for the card provider.

    Intent status is kept by the payment intent store, so
    retrieve_status() has nothing to report.
    """
    name = "mock"

    def __init__(self, secret: str) -> None:
        self.secret = secret

    async def create_intent(
        self, amount: int, currency: str, metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> CreateIntentResult:
        intent_id = f"mock_pi_{uuid.uuid4().hex}"
        return {
            "intent_id": intent_id,
            "client_secret": f"{intent_id}_secret_{uuid.uuid4().hex[:16]}",
            "status": "requires_confirmation",
        }

    async def confirm_intent(
        self, intent_id: str, payment_method: str
    ) -> ConfirmOutcome:
        if payment_method in DECLINED_METHODS:
            return {"intent_id": intent_id, "status": "failed",
                    "error": DECLINED_METHODS[payment_method]}
        if not payment_method.startswith("pm_"):
            return {"intent_id": intent_id, "status": "failed",
                    "error": "Invalid payment method."}
        return {"intent_id": intent_id, "status": "succeeded", "error": None}

    async def retrieve_status(self, intent_id: str) -> Optional[str]:
        return None

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, intent_id: str, kind: str) -> Tuple[bytes, dict]:
        """Signed webhook body and headers, as the provider would send."""
        event = {
            "type": f"payment_intent.{kind}",
            "payment_intent_id": intent_id,
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        payload = json.dumps(event).encode()
        return payload, {
            "x-mockpay-signature": self.sign(payload),
            "content-type": "application/json",
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise ValidationError("Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise ValidationError("Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("payment_intent_id", ""),
                event.get("idempotency_key")
        )


def new_adapter(settings) -> PaymentAdapter:
    if settings.payment_provider == "stripe":
        from .stripepay import StripePay
        return StripePay(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
        )
    return MockPay(secret=settings.mock_secret)
