# model/accounting/__init__.py
"""
Medal accounting backends. Both expose the same module-level API:

    create_accounts, ensure_wallet, credit, reserve, commit, release, balance

'pg' takes a GatedAsyncSession, 'tb' takes a tigerbeetle ClientAsync.
"""
import os
from types import ModuleType

BACKEND = os.getenv("ACCT_BACKEND", "pg").lower()  # 'tb' | 'pg'

BACKENDS = ("pg", "tb")


def get_backend(name: str | None = None) -> ModuleType:
    name = (name or BACKEND).lower()
    if name == "pg":
        from . import _postgres
        return _postgres
    if name == "tb":
        from . import _tigerbeetle
        return _tigerbeetle
    raise ValueError(f"unknown accounting backend: {name}")


__all__ = ["BACKEND", "BACKENDS", "get_backend"]
