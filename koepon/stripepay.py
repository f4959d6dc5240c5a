import asyncio
from typing import Dict, Optional, Tuple

import stripe

from .errors import NetworkError, PaymentProviderError, ValidationError
from .logger import get_logger
from .mockpay import ConfirmOutcome, CreateIntentResult, PaymentAdapter

log = get_logger(__name__)

# provider statuses we map onto our outcomes; only "succeeded" is paid
_PENDING = {"processing"}
_ACTION = {"requires_action", "requires_capture"}


class StripePay(PaymentAdapter):
    """Card payments through Stripe PaymentIntents.

    The stripe client is synchronous; calls run in a worker thread so the
    event loop is never blocked on the network.
    """
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str) -> None:
        if not secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY is required for stripe")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    async def create_intent(
        self, amount: int, currency: str, metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> CreateIntentResult:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency,
                metadata=metadata,
                payment_method_types=["card"],
                idempotency_key=idempotency_key,
                api_key=self.secret_key,
            )
        except stripe.APIConnectionError as e:
            raise NetworkError() from e
        except stripe.StripeError as e:
            log.warning("create payment intent failed: %s", e.user_message)
            raise PaymentProviderError(e.user_message or None) from e
        return {
            "intent_id": intent.id,
            "client_secret": intent.client_secret,
            "status": intent.status,
        }

    async def confirm_intent(
        self, intent_id: str, payment_method: str
    ) -> ConfirmOutcome:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.confirm,
                intent_id,
                payment_method=payment_method,
                api_key=self.secret_key,
            )
        except stripe.CardError as e:
            return {"intent_id": intent_id, "status": "failed",
                    "error": e.user_message or "Your card was declined."}
        except stripe.APIConnectionError as e:
            raise NetworkError() from e
        except stripe.StripeError as e:
            raise PaymentProviderError(e.user_message or None) from e

        if intent.status == "succeeded":
            return {"intent_id": intent_id, "status": "succeeded",
                    "error": None}
        if intent.status in _PENDING:
            # settled later by the webhook or retrieve_status()
            return {"intent_id": intent_id, "status": "processing",
                    "error": None}
        if intent.status in _ACTION:
            return {"intent_id": intent_id, "status": "requires_action",
                    "error": None}
        err = getattr(intent, "last_payment_error", None)
        return {"intent_id": intent_id, "status": "failed",
                "error": (err.message if err else None)
                or "Payment failed."}

    async def retrieve_status(self, intent_id: str) -> Optional[str]:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.retrieve, intent_id,
                api_key=self.secret_key,
            )
        except stripe.InvalidRequestError:
            return None
        except stripe.APIConnectionError as e:
            raise NetworkError() from e
        return intent.status

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("stripe-signature")
        if not sig:
            raise ValidationError("Invalid signature")
        try:
            event = stripe.Webhook.construct_event(
                payload, sig, self.webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            raise ValidationError("Invalid signature") from e
        except ValueError as e:
            raise ValidationError("Invalid JSON") from e
        return event.to_dict()

    def event_kind(self, event: dict) -> str:
        # payment_intent.succeeded | payment_intent.payment_failed |
        # payment_intent.canceled
        kind = event.get("type", "").split(".")[-1]
        return "failed" if kind == "payment_failed" else kind

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        obj = (event.get("data") or {}).get("object") or {}
        return obj.get("id", ""), event.get("id")
