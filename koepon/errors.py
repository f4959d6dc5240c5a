from __future__ import annotations
from typing import Any, Dict, Optional, Type

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse

from .logger import get_logger

log = get_logger(__name__)


class KoeponError(Exception):
    status_code = 500
    code = "internal_error"
    public_message = "エラーが発生しました。しばらくしてから再度お試しください"

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.public_message
        self.details = details
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(KoeponError):
    status_code = 400
    code = "validation_error"
    public_message = "入力内容に誤りがあります"


class AuthenticationError(KoeponError):
    status_code = 401
    code = "authentication_error"
    public_message = "メールアドレスまたはパスワードが間違っています"


class AuthorizationError(KoeponError):
    status_code = 403
    code = "authorization_error"
    public_message = "この操作を行う権限がありません"


class NotFoundError(KoeponError):
    status_code = 404
    code = "not_found"
    public_message = "リソースが見つかりません"


class ConflictError(KoeponError):
    status_code = 409
    code = "conflict"
    public_message = "リクエストが競合しました"


class DrawInProgress(ConflictError):
    code = "draw_in_progress"
    public_message = "この決済の抽選は処理中です"


class InsufficientBalance(KoeponError):
    status_code = 400
    code = "insufficient_balance"
    public_message = "メダル残高が不足しています"


class PaymentProviderError(KoeponError):
    # the provider's message is surfaced verbatim
    status_code = 402
    code = "payment_error"
    public_message = "決済に失敗しました"


class PaymentInProgress(KoeponError):
    status_code = 409
    code = "payment_in_progress"
    public_message = "Payment already in progress"


class NotInitialized(KoeponError):
    status_code = 500
    code = "not_initialized"
    public_message = "Stripe not initialized"


class InvalidTransition(KoeponError):
    status_code = 409
    code = "invalid_transition"
    public_message = "現在の状態ではこの操作を実行できません"


class AccountLocked(KoeponError):
    status_code = 429
    code = "account_locked"
    public_message = (
        "ログイン試行回数が上限に達しました。しばらくしてから再度お試しください"
    )


class NetworkError(KoeponError):
    status_code = 503
    code = "network_error"
    public_message = "ネットワークエラーが発生しました"


_BY_CODE: Dict[str, Type[KoeponError]] = {
    cls.code: cls for cls in (
        KoeponError, ValidationError, AuthenticationError, AuthorizationError,
        NotFoundError, ConflictError, DrawInProgress, InsufficientBalance,
        PaymentProviderError, PaymentInProgress, NotInitialized,
        InvalidTransition, AccountLocked, NetworkError,
    )
}

_BY_STATUS: Dict[int, Type[KoeponError]] = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    402: PaymentProviderError,
    429: AccountLocked,
}


def error_from_response(status_code: int, body: Any) -> KoeponError:
    """Rebuild a taxonomy error from an error response of the API."""
    code = None
    message = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        code = body["error"].get("code")
        message = body["error"].get("message")
    cls = _BY_CODE.get(code) or _BY_STATUS.get(status_code, KoeponError)
    err = cls(message)
    err.status_code = status_code
    return err


# ----------------------------
# FastAPI handlers
# ----------------------------
def install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(KoeponError)
    async def _koepon_error(request: Request, exc: KoeponError):
        if exc.status_code >= 500:
            log.error("request failed: %s", exc.code,
                      extra={"path": request.url.path,
                             "method": request.method})
        return ORJSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request,
                                  exc: RequestValidationError):
        # field names only: values may carry passwords
        fields = [".".join(str(p) for p in e.get("loc", ())[1:])
                  for e in exc.errors()]
        body = ValidationError().to_payload()
        body["error"]["fields"] = [f for f in fields if f]
        return ORJSONResponse(body, status_code=400)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        log.exception("unhandled error",
                      extra={"path": request.url.path,
                             "method": request.method})
        return ORJSONResponse(KoeponError().to_payload(), status_code=500)
