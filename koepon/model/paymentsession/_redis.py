from __future__ import annotations
from typing import Optional, Dict, Any
import time
import redis.asyncio as redis


# ---- keys
def k_pi(intent_id: str) -> str: return f"pi:{intent_id}"
def k_gate(intent_id: str) -> str: return f"drawgate:{intent_id}"
def k_result(intent_id: str) -> str: return f"drawresult:{intent_id}"
def k_idemp(evt: str) -> str: return f"idemp:{evt}"


GATE_TTL = 24 * 3600
RESULT_TTL = 7 * 24 * 3600

_INT_FIELDS = ("draw_count", "amount")
_FLOAT_FIELDS = ("created_at", "expires_at")


class PaymentIntentStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def save_intent(self, intent_id: str, mapping: Dict[str, Any]) -> None:
        # hash values are strings (decode_responses=True)
        created_at = float(mapping.get("created_at") or time.time())
        m = {k: str(v) for k, v in mapping.items() if v is not None}
        m.setdefault("currency", "jpy")
        m.setdefault("status", "requires_confirmation")
        m["intent_id"] = intent_id
        m["created_at"] = str(created_at)
        m["expires_at"] = str(created_at + self.ttl)
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_pi(intent_id), mapping=m)
        pipe.expireat(k_pi(intent_id), int(created_at + self.ttl))
        await pipe.execute()

    async def get_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_pi(intent_id))
        if not h:
            return None
        out: Dict[str, Any] = dict(h)
        for key in _INT_FIELDS:
            if key in out:
                out[key] = int(out[key])
        for key in _FLOAT_FIELDS:
            if key in out:
                out[key] = float(out[key])
        return out

    async def set_status(self, intent_id: str, status: str) -> bool:
        if not await self.r.exists(k_pi(intent_id)):
            return False
        await self.r.hset(k_pi(intent_id), "status", status)
        return True

    async def acquire_draw_gate(self, intent_id: str) -> bool:
        # NX gate, 24h TTL
        ok = await self.r.set(k_gate(intent_id), "1", nx=True, ex=GATE_TTL)
        return bool(ok)

    async def release_draw_gate(self, intent_id: str) -> None:
        await self.r.delete(k_gate(intent_id))

    async def save_draw_result(self, intent_id: str, result_json: str) -> None:
        await self.r.set(k_result(intent_id), result_json, nx=True,
                         ex=RESULT_TTL)

    async def get_draw_result(self, intent_id: str) -> Optional[str]:
        return await self.r.get(k_result(intent_id))

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        ok = await self.r.set(k_idemp(evt_id), "1", nx=True, ex=3600)
        return bool(ok)
