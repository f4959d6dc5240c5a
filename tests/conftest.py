from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient

from koepon.client.api import ApiClient
from koepon.config import Settings
from koepon.infra import timings
from koepon.infra.sql import make_async_engine
from koepon.mockpay import MockPay
from koepon.model.accounting import _postgres as pg_ledger
from koepon.model.accounting._postgres import GatedAsyncSession
from koepon.model.orm import Base
from koepon.model.paymentsession import new_store
from koepon.model.paymentsession._postgres import create_schema
from koepon.seed import seed_demo_data
from koepon.server import create_app
from koepon.services.admin import AdminService
from koepon.services.draw_algorithm import DrawAlgorithm
from koepon.services.draws import DrawService
from koepon.services.medals import MedalService

BASE_URL = "http://koepon.test"


@pytest.fixture(autouse=True)
def _fresh_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
async def sql(tmp_path):
    """SQLite database with the ORM, ledger and payment session schemas.

    Yields (session factory, gated).
    """
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/koepon.db"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await pg_ledger.create_accounts(conn)
        await create_schema(conn)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def ledger_session(sql):
    SessionAsync, gated = sql
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


class FakeBackend:
    """Scripted JSON API behind httpx.MockTransport.

    Routes map "METHOD /path" to either a response body (200) or a callable
    taking the request and returning an httpx.Response.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, Any] = {}
        self.calls: List[httpx.Request] = []

    def on(self, method: str, path: str, body: Any = None, *,
           status: int = 200,
           handler: Callable[[httpx.Request], httpx.Response] | None = None
           ) -> None:
        if handler is None:
            def handler(request: httpx.Request, _b=body, _s=status):
                return httpx.Response(_s, json=_b)
        self.routes[f"{method} {path}"] = handler

    def error(self, method: str, path: str, status: int, code: str,
              message: str) -> None:
        self.on(method, path, {"error": {"code": code, "message": message}},
                status=status)

    def calls_to(self, method: str, path: str) -> List[httpx.Request]:
        return [c for c in self.calls
                if c.method == method and c.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get(f"{request.method} {request.url.path}")
        if handler is None:
            return httpx.Response(
                404, json={"error": {"code": "not_found",
                                     "message": "no route"}})
        return handler(request)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
async def api(backend: FakeBackend):
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    client = ApiClient(BASE_URL, token="test-token", http=http)
    yield client
    await http.aclose()


def _balance_body(available: int, *, locked: int = 0, used: int = 0,
                  vtubers: Tuple[Tuple[str, int], ...] = ()) -> Dict[str, Any]:
    return {
        "totalMedals": available + locked,
        "availableMedals": available,
        "usedMedals": used,
        "lockedMedals": locked,
        "vtuberBalances": [
            {"vtuberId": vid, "vtuberName": vid, "balance": bal,
             "totalEarned": bal, "totalUsed": 0}
            for vid, bal in vtubers
        ],
        "lastUpdated": "2026-10-01T00:00:00+00:00",
    }


@pytest.fixture
def balance_body():
    return _balance_body


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path}/api.db",
        seed_demo_data=True,
        bcrypt_rounds=4,
        acct_backend="pg",
        paysession_backend="pg",
        security_store="memory",
        payment_provider="mock",
        jwt_secret="test-secret",
        log_level="WARNING",
    )


@pytest.fixture
def client(app_settings: Settings):
    with TestClient(create_app(app_settings)) as c:
        yield c


def _login(client: TestClient, email: str = "fan@koepon.example",
           password: str = "fanpass123") -> Dict[str, str]:
    resp = client.post("/api/auth/login",
                       json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return {"authorization": f"Bearer {resp.json()['accessToken']}"}


@pytest.fixture
def login():
    """Logs in through the API and returns the auth header."""
    return _login


@dataclass
class Services:
    medals: MedalService
    draws: DrawService
    admin: AdminService
    store: Any
    adapter: MockPay


@pytest.fixture
async def services(sql):
    """Seeded demo data with the SQL ledger and payment session store."""
    SessionAsync, gated = sql
    async with SessionAsync() as db, SessionAsync() as acs, \
            SessionAsync() as ps:
        medals = MedalService(
            db, gated, pg_ledger, GatedAsyncSession(session=acs, gated=gated)
        )
        await seed_demo_data(db, gated, medals, rounds=4)
        store = new_store("pg", db=ps, gated=gated, ttl_seconds=3600)
        adapter = MockPay(secret="test")
        draws = DrawService(db, gated, store, adapter, medals,
                            DrawAlgorithm(rng=random.Random(11)))
        yield Services(medals, draws, AdminService(db, gated), store,
                       adapter)
