from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from ..errors import (
    KoeponError, NotInitialized, PaymentInProgress, PaymentProviderError,
    ValidationError,
)
from ..logger import get_logger
from ..model.gacha import PullType
from .api import ApiClient

log = get_logger(__name__)


class PaymentPhase(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    CONFIRMING = "confirming"


@dataclass
class PaymentState:
    loading: bool = False
    error: Optional[str] = None
    success: bool = False
    phase: PaymentPhase = PaymentPhase.IDLE


class PaymentConfirmer(Protocol):  # pragma: no cover - Protocol
    async def confirm(self, client_secret: str,
                      payment_method: str) -> Dict[str, Any]:
        """Returns {"paymentIntentId", "status", "error"}."""
        ...


class HttpPaymentConfirmer:
    """Confirms through the server, which talks to the card provider."""

    def __init__(self, api: ApiClient) -> None:
        self.api = api

    async def confirm(self, client_secret: str,
                      payment_method: str) -> Dict[str, Any]:
        try:
            return await self.api.post("/payments/confirm", {
                "clientSecret": client_secret,
                "paymentMethod": payment_method,
            })
        except PaymentProviderError as e:
            return {"paymentIntentId": None, "status": "failed",
                    "error": e.message}


class PaymentIntentClient:
    """Creates and confirms payment intents for draws.

    Only one create or confirm call may be in flight at a time; a second
    call raises PaymentInProgress without touching the network.
    """

    def __init__(self, api: ApiClient,
                 confirmer: Optional[PaymentConfirmer] = None) -> None:
        self.api = api
        self.confirmer = confirmer
        self.state = PaymentState()
        self.payment_method: Optional[str] = None
        self.client_secret: Optional[str] = None
        self.payment_intent_id: Optional[str] = None
        self._in_flight = False

    def set_payment_method(self, payment_method: Optional[str]) -> None:
        self.payment_method = payment_method

    def _begin(self, phase: PaymentPhase) -> None:
        if self._in_flight:
            raise PaymentInProgress()
        self._in_flight = True
        self.state.loading = True
        self.state.error = None
        self.state.success = False
        self.state.phase = phase

    def _end(self) -> None:
        self._in_flight = False
        self.state.loading = False
        self.state.phase = PaymentPhase.IDLE

    async def create_payment_intent(self, gacha_id: str, amount: int,
                                    pull_type: PullType | str) -> str:
        """Create an intent on the server and return its client secret."""
        self._begin(PaymentPhase.CREATING)
        try:
            data = await self.api.post("/payments/create-intent", {
                "gachaId": gacha_id,
                "amount": amount,
                "pullType": PullType(pull_type).value,
            })
        except KoeponError as e:
            self.state.error = e.message
            raise
        except ValueError:
            err = ValidationError("invalid pull type")
            self.state.error = err.message
            raise err
        finally:
            self._end()
        self.client_secret = data["clientSecret"]
        self.payment_intent_id = data.get("paymentIntentId")
        return self.client_secret

    async def confirm_payment(self, client_secret: str) -> Dict[str, Any]:
        """Confirm with the provider.

        A decline is not raised: it is recorded in `state.error` and the
        provider's result is returned.
        """
        if self.confirmer is None:
            err = NotInitialized()
            self.state.error = err.message
            raise err
        if not self.payment_method:
            err = ValidationError("Card element not found")
            self.state.error = err.message
            raise err

        self._begin(PaymentPhase.CONFIRMING)
        try:
            result = await self.confirmer.confirm(client_secret,
                                                  self.payment_method)
        except KoeponError as e:
            self.state.error = e.message
            raise
        finally:
            self._end()

        if result.get("error"):
            log.info("payment declined: %s", result["error"])
            self.state.error = result["error"]
            self.state.success = False
        else:
            self.state.error = None
            self.state.success = True
            self.payment_intent_id = (result.get("paymentIntentId")
                                      or self.payment_intent_id)
        return result

    def reset(self) -> None:
        self.state = PaymentState()
        self.client_secret = None
        self.payment_intent_id = None
