from __future__ import annotations
import asyncio
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

import redis.asyncio as redis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings
from .errors import (
    AccountLocked, AuthenticationError, AuthorizationError, NotFoundError,
    ValidationError, install_error_handlers,
)
from .helpers import now_ts
from .infra.sql import engine_from_settings
from .infra.timings import record_timing, snapshot, timeit
from .logger import get_logger, setup_logger
from .mockpay import intent_id_from_client_secret, new_adapter
from .model import accounting
from .model.accounting._postgres import GatedAsyncSession
from .model.gacha import PULL_PRICES, PullType, Rarity
from .model.orm import Base, User
from .model.paymentsession import PaymentIntentStore, new_store
from .model.paymentsession._postgres import (
    create_schema as create_paysession_schema,
)
from .security.audit import SecurityEvent, SecurityLogger, Severity
from .security.bruteforce import (
    BruteForceProtection, MemoryAttemptStore, RedisAttemptStore,
)
from .security.encryption import EncryptionUtils
from .security.passwords import PasswordSecurity
from .security.sessions import (
    MemorySessionStore, RedisSessionStore, SessionSecurity,
)
from .security.tokens import TokenError, TokenManager
from .seed import seed_demo_data
from .services.admin import AdminService
from .services.draw_algorithm import DrawAlgorithm
from .services.draws import DrawService
from .services.medals import MedalService

log = get_logger(__name__)

CURRENCY = "jpy"


# ----------------------------
# Request bodies
# ----------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateIntentIn(CamelModel):
    gacha_id: str
    amount: int
    pull_type: PullType


class ConfirmIn(CamelModel):
    client_secret: str
    payment_method: str


class DrawIn(CamelModel):
    gacha_id: str
    payment_intent_id: str
    count: Optional[int] = None


class ExchangeIn(CamelModel):
    item_id: str


class LoginIn(CamelModel):
    email: str
    password: str


class RefreshIn(CamelModel):
    refresh_token: str


class ReviewIn(CamelModel):
    status: str


class GachaItemIn(CamelModel):
    name: str
    rarity: Rarity
    drop_rate: Optional[float] = None
    image_url: str = ""
    max_count: Optional[int] = Field(default=None, ge=0)


class GachaIn(CamelModel):
    vtuber_id: str
    name: str = Field(min_length=1)
    description: str = ""
    medal_reward: int = Field(default=10, ge=0)
    status: str = "draft"
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    items: List[GachaItemIn] = Field(min_length=1)


@dataclass
class CurrentUser:
    id: str
    email: str
    role: str
    session_id: str


# ----------------------------
# Dependency providers
# ----------------------------
async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.SessionAsync() as session:
        yield session


async def accounting_client(request: Request):
    st = request.app.state
    if st.settings.acct_backend == "pg":
        async with st.SessionAsync() as session:
            yield GatedAsyncSession(session=session, gated=st.gated)
    else:
        if st.tb_client is None:
            raise RuntimeError("TigerBeetle client not initialized")
        yield st.tb_client


async def paymentsessions(request: Request) -> PaymentIntentStore:
    st = request.app.state
    ttl = st.settings.payment_intent_ttl_seconds
    if st.settings.paysession_backend == "pg":
        async with st.SessionAsync() as session:
            yield new_store("pg", db=session, gated=st.gated,
                            ttl_seconds=ttl)
    else:
        yield new_store("redis", r=st.redis, ttl_seconds=ttl)


async def medal_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    ac=Depends(accounting_client),
) -> MedalService:
    st = request.app.state
    return MedalService(db, st.gated, st.ledger, ac,
                        hold_ttl_seconds=st.settings.reservation_ttl_seconds)


async def draw_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    store: PaymentIntentStore = Depends(paymentsessions),
    medals: MedalService = Depends(medal_service),
) -> DrawService:
    st = request.app.state
    return DrawService(db, st.gated, store, st.adapter, medals, st.algorithm)


async def admin_service(
    request: Request, db: AsyncSession = Depends(get_db),
) -> AdminService:
    return AdminService(db, request.app.state.gated)


def _client_info(request: Request):
    ip = request.client.host if request.client else ""
    return ip, request.headers.get("user-agent", "")


async def require_user(request: Request) -> CurrentUser:
    st = request.app.state
    ip, ua = _client_info(request)
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("ログインが必要です")
    try:
        claims = st.tokens.verify_token(token, expected_type="access")
    except TokenError as e:
        st.audit.log_security_event(
            SecurityEvent.TOKEN_REJECTED, Severity.MEDIUM,
            ip_address=ip, user_agent=ua, details={"kind": e.kind.value},
        )
        raise
    sid = claims.get("sid")
    if not sid or await st.sessions.validate_session(sid, ua, ip) is None:
        st.audit.log_security_event(
            SecurityEvent.SESSION_REJECTED, Severity.MEDIUM,
            ip_address=ip, user_agent=ua, user_id=claims.get("sub"),
        )
        raise AuthenticationError("セッションが無効です。再度ログインしてください")
    return CurrentUser(id=claims["sub"], email=claims.get("email", ""),
                       role=claims.get("role", "user"), session_id=sid)


async def require_admin(
    request: Request, user: CurrentUser = Depends(require_user),
) -> CurrentUser:
    if user.role != "admin":
        ip, ua = _client_info(request)
        request.app.state.audit.log_security_event(
            SecurityEvent.ACCESS_DENIED, Severity.HIGH,
            ip_address=ip, user_agent=ua, user_id=user.id,
            details={"path": request.url.path},
        )
        raise AuthorizationError()
    return user


# ----------------------------
# App
# ----------------------------
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logger(settings.service_name, settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        st = app.state
        engine, SessionAsync, _, gated = engine_from_settings(settings)
        st.engine, st.SessionAsync, st.gated = engine, SessionAsync, gated
        st.ledger = accounting.get_backend(settings.acct_backend)
        st.redis = None
        st.tb_client = None

        if "redis" in (settings.paysession_backend, settings.security_store):
            st.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=settings.redis_max_conn,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
        if settings.acct_backend == "tb":
            st.tb_client = st.ledger.connect(settings.tb_address,
                                             settings.tb_cluster_id)

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            if settings.acct_backend == "pg":
                await st.ledger.create_accounts(conn)
            if settings.paysession_backend == "pg":
                await create_paysession_schema(conn)
        if st.tb_client is not None:
            await st.ledger.create_accounts(st.tb_client)

        if settings.security_store == "redis":
            session_store = RedisSessionStore(st.redis)
            attempt_store = RedisAttemptStore(st.redis)
        else:
            session_store = MemorySessionStore()
            attempt_store = MemoryAttemptStore()
        st.tokens = TokenManager(settings.jwt_secret)
        st.sessions = SessionSecurity(session_store)
        st.bruteforce = BruteForceProtection(attempt_store)
        st.encryption = EncryptionUtils.from_key_string(
            settings.encryption_key
        )
        st.audit = SecurityLogger(st.encryption)
        st.adapter = new_adapter(settings)
        st.algorithm = DrawAlgorithm()
        st.started_at = now_ts()

        if settings.seed_demo_data:
            async with SessionAsync() as db, SessionAsync() as acs:
                ac = (GatedAsyncSession(session=acs, gated=gated)
                      if settings.acct_backend == "pg" else st.tb_client)
                await seed_demo_data(
                    db, gated, MedalService(db, gated, st.ledger, ac),
                    rounds=settings.bcrypt_rounds,
                )

        log.info("koepon starting: accounting=%s payment sessions=%s "
                 "payments=%s", settings.acct_backend,
                 settings.paysession_backend, st.adapter.name)
        try:
            yield
        finally:
            if st.redis is not None:
                await st.redis.close()
                st.redis = None
            if st.tb_client is not None:
                await st.tb_client.close()
                st.tb_client = None
            await engine.dispose()

    app = FastAPI(
        title="Koepon!",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    install_error_handlers(app)
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def _request_timings(request: Request, call_next):
        t0 = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            record_timing("http.error", time.perf_counter() - t0)
            raise
        dt = time.perf_counter() - t0
        record_timing("http.request", dt)
        if response.status_code >= 500:
            record_timing("http.error", dt)
        log.debug("request", extra={
            "method": request.method, "path": request.url.path,
            "status": response.status_code, "duration": round(dt, 6),
        })
        return response

    _payment_routes(app)
    _medal_routes(app)
    _gacha_routes(app)
    _auth_routes(app)
    _admin_routes(app)

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "service": settings.service_name,
            "accounting": settings.acct_backend,
            "paymentSessions": settings.paysession_backend,
        }

    return app


# ----------------------------
# Payments
# ----------------------------
def _payment_routes(app: FastAPI) -> None:

    @app.post("/payments/create-intent")
    async def create_intent(
        request: Request,
        body: CreateIntentIn,
        user: CurrentUser = Depends(require_user),
        draws: DrawService = Depends(draw_service),
        store: PaymentIntentStore = Depends(paymentsessions),
    ):
        price = PULL_PRICES[body.pull_type]
        if body.amount != price:
            raise ValidationError("金額が正しくありません")
        await draws.require_active_gacha(body.gacha_id)

        adapter = request.app.state.adapter
        async with timeit("payments.create"):
            created = await adapter.create_intent(
                price, CURRENCY,
                metadata={"user_id": user.id, "gacha_id": body.gacha_id,
                          "pull_type": body.pull_type.value},
            )
        async with timeit("paymentsession.save"):
            await store.save_intent(created["intent_id"], {
                "user_id": user.id,
                "gacha_id": body.gacha_id,
                "pull_type": body.pull_type.value,
                "draw_count": body.pull_type.draw_count,
                "amount": price,
                "currency": CURRENCY,
                "status": created["status"],
                "created_at": now_ts(),
            })
        return {
            "clientSecret": created["client_secret"],
            "paymentIntentId": created["intent_id"],
            "amount": price,
            "currency": CURRENCY,
        }

    @app.post("/payments/confirm")
    async def confirm_payment(
        request: Request,
        body: ConfirmIn,
        user: CurrentUser = Depends(require_user),
        store: PaymentIntentStore = Depends(paymentsessions),
    ):
        intent_id = intent_id_from_client_secret(body.client_secret)
        intent = await store.get_intent(intent_id)
        if intent is None:
            raise NotFoundError("決済情報が見つかりません")
        if intent["user_id"] != user.id:
            raise AuthorizationError()
        if intent["status"] == "succeeded":
            return {"paymentIntentId": intent_id, "status": "succeeded",
                    "error": None}

        async with timeit("payments.confirm"):
            outcome = await request.app.state.adapter.confirm_intent(
                intent_id, body.payment_method
            )
        if outcome["status"] in ("succeeded", "processing"):
            await store.set_status(intent_id, outcome["status"])
        elif outcome["status"] == "failed":
            await store.set_status(intent_id, "requires_payment_method")
            log.info("payment declined", extra={
                "user_id": user.id, "payment_intent_id": intent_id,
            })
        return {"paymentIntentId": intent_id, "status": outcome["status"],
                "error": outcome["error"]}

    @app.post("/payments/webhook")
    async def payments_webhook(
        request: Request,
        store: PaymentIntentStore = Depends(paymentsessions),
    ):
        adapter = request.app.state.adapter
        payload = await request.body()
        event = adapter.verify_webhook(payload, dict(request.headers))
        kind = adapter.event_kind(event)
        intent_id, idem = adapter.event_ids(event)
        if not intent_id:
            raise ValidationError("missing payment_intent_id")

        intent = await store.get_intent(intent_id)
        if intent is None:
            raise NotFoundError("決済情報が見つかりません")
        if not await store.mark_event_seen(idem):
            return {"ok": True, "idempotent": True}

        status = {
            "succeeded": "succeeded",
            "failed": "requires_payment_method",
            "canceled": "canceled",
        }.get(kind)
        # a late failure never downgrades a paid intent
        if status and intent["status"] != "succeeded":
            await store.set_status(intent_id, status)
        log.info("webhook processed", extra={
            "payment_intent_id": intent_id, "event_type": kind,
        })
        return {"ok": True, "status": status}


# ----------------------------
# Medals
# ----------------------------
def _medal_routes(app: FastAPI) -> None:

    @app.get("/api/v1/medals/balance")
    async def medal_balance(
        user: CurrentUser = Depends(require_user),
        medals: MedalService = Depends(medal_service),
    ):
        return (await medals.get_balance(user.id)).to_dict()

    @app.get("/api/v1/medals/transactions")
    async def medal_transactions(
        page: int = Query(1, ge=1),
        page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
        tx_type: str = Query("", alias="type"),
        source: str = "",
        start_date: str = Query("", alias="startDate"),
        end_date: str = Query("", alias="endDate"),
        user: CurrentUser = Depends(require_user),
        medals: MedalService = Depends(medal_service),
    ):
        items, pagination = await medals.list_transactions(
            user.id,
            {"type": tx_type, "source": source,
             "startDate": start_date, "endDate": end_date},
            page=page, page_size=page_size,
        )
        return {"items": [t.to_dict() for t in items],
                "pagination": pagination.to_dict()}

    @app.post("/api/v1/medals/exchange")
    async def medal_exchange(
        body: ExchangeIn,
        user: CurrentUser = Depends(require_user),
        medals: MedalService = Depends(medal_service),
    ):
        return await medals.exchange(user.id, body.item_id)


# ----------------------------
# Gacha
# ----------------------------
def _gacha_routes(app: FastAPI) -> None:

    async def _draw(body: DrawIn, count: int, user: CurrentUser,
                    draws: DrawService):
        if body.count is not None and body.count != count:
            raise ValidationError("抽選回数が正しくありません")
        result, replayed = await draws.execute(
            user.id, body.gacha_id, count, body.payment_intent_id
        )
        return {"result": result.to_dict(), "replayed": replayed}

    @app.post("/api/gacha/draw")
    async def draw_single(
        body: DrawIn,
        user: CurrentUser = Depends(require_user),
        draws: DrawService = Depends(draw_service),
    ):
        return await _draw(body, 1, user, draws)

    @app.post("/api/gacha/draw-multi")
    async def draw_multi(
        body: DrawIn,
        user: CurrentUser = Depends(require_user),
        draws: DrawService = Depends(draw_service),
    ):
        return await _draw(body, 10, user, draws)

    @app.get("/api/gacha")
    async def gacha_list(draws: DrawService = Depends(draw_service)):
        return {"items": await draws.list_gachas()}

    # declared before /api/gacha/{gacha_id}
    @app.get("/api/gacha/history")
    async def gacha_history(
        page: int = Query(1, ge=1),
        page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
        vtuber: str = "",
        rarity: str = "",
        start_date: str = Query("", alias="startDate"),
        end_date: str = Query("", alias="endDate"),
        user: CurrentUser = Depends(require_user),
        draws: DrawService = Depends(draw_service),
    ):
        items, pagination = await draws.list_history(
            user.id,
            {"vtuber": vtuber, "rarity": rarity,
             "startDate": start_date, "endDate": end_date},
            page=page, page_size=page_size,
        )
        return {"items": [r.to_dict() for r in items],
                "pagination": pagination.to_dict()}

    @app.get("/api/gacha/{gacha_id}")
    async def gacha_detail(gacha_id: str,
                           draws: DrawService = Depends(draw_service)):
        return await draws.get_gacha(gacha_id)


# ----------------------------
# Auth
# ----------------------------
def _user_dict(u: User):
    return {"id": u.id, "email": u.email, "displayName": u.display_name,
            "role": u.role}


def _auth_routes(app: FastAPI) -> None:

    @app.post("/api/auth/login")
    async def login(request: Request, body: LoginIn,
                    db: AsyncSession = Depends(get_db)):
        st = request.app.state
        ip, ua = _client_info(request)
        email = body.email.strip().lower()

        if await st.bruteforce.is_locked(email):
            remaining = await st.bruteforce.get_remaining_lock_time(email)
            st.audit.log_security_event(
                SecurityEvent.ACCOUNT_LOCKED, Severity.HIGH,
                ip_address=ip, user_agent=ua, email=email,
                details={"remainingSeconds": remaining},
            )
            raise AccountLocked(retry_after=remaining)

        async with st.gated():
            async with db.begin():
                user = (await db.execute(
                    select(User).where(User.email == email)
                )).scalars().first()
        ok = user is not None and user.status == "active" and (
            await asyncio.to_thread(PasswordSecurity.verify_password,
                                    body.password, user.password_hash)
        )
        if not ok:
            rec = await st.bruteforce.record_failed_attempt(email)
            locked = rec.locked_until > now_ts()
            st.audit.log_security_event(
                SecurityEvent.LOGIN_FAILURE,
                Severity.HIGH if locked else Severity.MEDIUM,
                ip_address=ip, user_agent=ua, email=email,
                details={"attempts": rec.count},
            )
            raise AuthenticationError()

        await st.bruteforce.clear_attempts(email)
        sid = PasswordSecurity.generate_secure_token(16)
        await st.sessions.create_session(sid, user.id, ua, ip)
        async with st.gated():
            async with db.begin():
                user.last_login_at = now_ts()
                db.add(user)
        st.audit.log_security_event(
            SecurityEvent.LOGIN_SUCCESS, ip_address=ip, user_agent=ua,
            user_id=user.id, email=email,
        )
        return {
            "accessToken": st.tokens.generate_access_token(
                user.id, user.email, user.role, session_id=sid),
            "refreshToken": st.tokens.generate_refresh_token(
                user.id, session_id=sid),
            "tokenType": "Bearer",
            "expiresIn": int(st.tokens.access_ttl.total_seconds()),
            "csrfToken": PasswordSecurity.generate_csrf_token(),
            "user": _user_dict(user),
        }

    @app.post("/api/auth/refresh")
    async def refresh(request: Request, body: RefreshIn,
                      db: AsyncSession = Depends(get_db)):
        st = request.app.state
        ip, ua = _client_info(request)
        claims = st.tokens.verify_token(body.refresh_token,
                                        expected_type="refresh")
        sid = claims.get("sid")
        if not sid or await st.sessions.validate_session(sid, ua, ip) is None:
            raise AuthenticationError("セッションが無効です。再度ログインしてください")
        async with st.gated():
            async with db.begin():
                user = await db.get(User, claims["sub"])
        if user is None or user.status != "active":
            await st.sessions.destroy_session(sid)
            raise AuthenticationError("セッションが無効です。再度ログインしてください")
        return {
            "accessToken": st.tokens.generate_access_token(
                user.id, user.email, user.role, session_id=sid),
            "refreshToken": st.tokens.generate_refresh_token(
                user.id, session_id=sid),
            "tokenType": "Bearer",
            "expiresIn": int(st.tokens.access_ttl.total_seconds()),
        }

    @app.post("/api/auth/logout")
    async def logout(request: Request,
                     user: CurrentUser = Depends(require_user)):
        st = request.app.state
        ip, ua = _client_info(request)
        await st.sessions.destroy_session(user.session_id)
        st.audit.log_security_event(
            SecurityEvent.LOGOUT, ip_address=ip, user_agent=ua,
            user_id=user.id,
        )
        return {"ok": True}

    @app.get("/api/auth/validate")
    async def validate(user: CurrentUser = Depends(require_user)):
        return {"valid": True, "user": {"id": user.id, "email": user.email,
                                        "role": user.role}}


# ----------------------------
# Admin
# ----------------------------
def _admin_routes(app: FastAPI) -> None:

    @app.get("/admin/dashboard/stats")
    async def dashboard_stats(
        request: Request,
        _: CurrentUser = Depends(require_admin),
        admin: AdminService = Depends(admin_service),
    ):
        return await admin.dashboard_stats(
            snapshot(), started_at=request.app.state.started_at
        )

    @app.get("/admin/users")
    async def admin_users(
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        _: CurrentUser = Depends(require_admin),
        admin: AdminService = Depends(admin_service),
    ):
        return await admin.list_users(limit=limit, offset=offset)

    @app.get("/admin/vtubers")
    async def admin_vtubers(
        status: Optional[str] = None,
        _: CurrentUser = Depends(require_admin),
        admin: AdminService = Depends(admin_service),
    ):
        return await admin.list_vtubers(status)

    @app.post("/admin/vtubers/{vtuber_id}/review")
    async def admin_review_vtuber(
        vtuber_id: str,
        body: ReviewIn,
        _: CurrentUser = Depends(require_admin),
        admin: AdminService = Depends(admin_service),
    ):
        return await admin.review_vtuber(vtuber_id, body.status)

    @app.get("/admin/gacha")
    async def admin_gachas(
        _: CurrentUser = Depends(require_admin),
        admin: AdminService = Depends(admin_service),
    ):
        return await admin.list_gachas()

    @app.post("/admin/gacha")
    async def admin_create_gacha(
        body: GachaIn,
        _: CurrentUser = Depends(require_admin),
        admin: AdminService = Depends(admin_service),
    ):
        return await admin.create_gacha(
            body.model_dump(by_alias=True, mode="json")
        )


def main():
    import uvicorn
    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host="0.0.0.0",
                port=int(os.environ.get("PORT", "8000")))


if __name__ == "__main__":
    main()
