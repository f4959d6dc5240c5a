#!/usr/bin/env python3
"""
Koepon flow validator / load client (async)

Runs the paid draw flow against a server with the client layer:
  1) POST /api/auth/login                      -> access token
  2) GET  /api/v1/medals/balance               -> starting balance
  3) per draw: create intent, confirm, draw    (DrawOrchestrator)
     then repeat the draw call with the same payment intent and expect the
     stored result back
  4) GET  /api/v1/medals/balance               -> must equal start + earned

Prints an aggregate report and exits 0 when every flow behaved as expected,
1 otherwise.

Usage:
  koepon-validate --base http://localhost:8000 --total 50 --concurrency 5
  koepon-validate --total 20 --decline-rate 0.2 --pull ten

Notes:
- This targets the mock payment provider (PAYMENT_PROVIDER=mock).
- All flows share one login session, so the balance check assumes nobody
  else draws with the same account meanwhile.
"""
from __future__ import annotations
import argparse
import asyncio
import random
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from .client.api import ApiClient
from .client.gacha import DrawOrchestrator
from .client.medal import MedalLedger
from .client.payment import HttpPaymentConfirmer, PaymentIntentClient
from .errors import KoeponError
from .model.gacha import DrawState

CARD_OK = "pm_card_visa"
CARD_DECLINED = "pm_card_chargeDeclined"


@dataclass
class Result:
    ok: bool
    # DRAWN | DECLINED | ERROR
    outcome: str
    medals: int = 0
    t_flow: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_flow for r in self.results if r.t_flow > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "drawn": sum(1 for r in self.results if r.outcome == "DRAWN"),
            "declined": sum(
                1 for r in self.results if r.outcome == "DECLINED"
            ),
            "error": sum(1 for r in self.results if r.outcome == "ERROR"),
            "medals": sum(r.medals for r in self.results),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Flow Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"DRAWN: {int(s['drawn'])}   DECLINED: {int(s['declined'])}   "
            f"ERROR: {int(s['error'])}   medals earned: {int(s['medals'])}"
        )
        print(
            f"Latency (pay + draw + replay): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} flows/s"
        )
        for r in self.results:
            if not r.ok and r.err:
                print(f"  - {r.outcome}: {r.err}")


async def one_flow(api: ApiClient, ledger: MedalLedger, gacha_id: str,
                   count: int, decline: bool) -> Result:
    r = Result(ok=False, outcome="ERROR")
    payments = PaymentIntentClient(api, HttpPaymentConfirmer(api))
    payments.set_payment_method(CARD_DECLINED if decline else CARD_OK)
    orchestrator = DrawOrchestrator(api, payments, ledger)

    t0 = time.perf_counter()
    result = await orchestrator.execute_draw(gacha_id, count)
    if result is None:
        r.t_flow = time.perf_counter() - t0
        if decline and orchestrator.state is DrawState.ERROR:
            r.ok, r.outcome = True, "DECLINED"
        else:
            r.err = f"draw failed: {orchestrator.error}"
        return r
    if decline:
        r.err = "declined card was charged"
        return r
    if len(result.items) != count:
        r.err = f"expected {count} items, got {len(result.items)}"
        return r

    # same payment intent again: must replay, not draw twice
    path = "/api/gacha/draw" if count == 1 else "/api/gacha/draw-multi"
    try:
        again = await api.post(path, {
            "gachaId": gacha_id, "paymentIntentId": result.payment_id,
        })
    except KoeponError as e:
        r.err = f"replay: {e.message}"
        return r
    r.t_flow = time.perf_counter() - t0
    if not again.get("replayed") or again["result"]["id"] != result.id:
        r.err = "replay drew again"
        return r

    r.ok, r.outcome, r.medals = True, "DRAWN", result.medals_earned
    return r


async def run_flows(
    base: str,
    email: str,
    password: str,
    gacha_id: Optional[str],
    total: int,
    concurrency: int,
    count: int,
    decline_rate: float,
) -> tuple[Stats, bool]:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, timeout=30.0,
        headers={"User-Agent": "KoeponValidate/1.0"},
    ) as http:
        api = ApiClient(base, http=http)
        login = await api.post("/api/auth/login",
                               {"email": email, "password": password})
        api.token = login["accessToken"]

        if gacha_id is None:
            gachas = (await api.get("/api/gacha")).get("items", [])
            if not gachas:
                print("No active gacha on the server.")
                return stats, False
            gacha_id = gachas[0]["id"]

        ledger = MedalLedger(api)
        start = await ledger.fetch_medal_balance()
        if start is None:
            print(f"Cannot read balance: {ledger.medal_balance_error}")
            return stats, False
        start_available = start.available_medals

        async def worker(n: int):
            async with sem:
                res = await one_flow(api, ledger, gacha_id, count,
                                     random.random() < decline_rate)
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        local_available = ledger.medal_balance.available_medals
        server = MedalLedger(api)
        end = await server.fetch_medal_balance()

    earned = stats.summary()["medals"]
    balanced = (end is not None
                and end.available_medals == start_available + earned
                and local_available == end.available_medals)
    if not balanced:
        print(
            f"Balance mismatch: start {start_available} + earned {earned}, "
            f"local {local_available}, server "
            f"{end.available_medals if end else 'unavailable'}"
        )
    return stats, balanced


def main():
    ap = argparse.ArgumentParser(description="Koepon flow validator")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the API")
    ap.add_argument("--email", default="fan@koepon.example")
    ap.add_argument("--password", default="fanpass123")
    ap.add_argument("--gacha", default=None,
                    help="Gacha id (default: first active gacha)")
    ap.add_argument("--total", type=int, default=20,
                    help="Total draw flows to run")
    ap.add_argument("--concurrency", type=int, default=5,
                    help="Concurrent flows")
    ap.add_argument("--pull", choices=("single", "ten"), default="single")
    ap.add_argument("--decline-rate", type=float, default=0.0,
                    help="Fraction of flows paying with a declined card")
    args = ap.parse_args()

    t_start = time.perf_counter()
    try:
        stats, balanced = asyncio.run(run_flows(
            base=args.base,
            email=args.email,
            password=args.password,
            gacha_id=args.gacha,
            total=args.total,
            concurrency=args.concurrency,
            count=1 if args.pull == "single" else 10,
            decline_rate=args.decline_rate,
        ))
    except KoeponError as e:
        print(f"Validation aborted: {e.message}")
        sys.exit(1)
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)

    ok = balanced and all(r.ok for r in stats.results)
    print("RESULT:", "OK" if ok else "FAILED")
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
