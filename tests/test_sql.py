from __future__ import annotations

import asyncio

import pytest

from koepon.config import ConfigError, Settings
from koepon.infra.sql import async_url, engine_from_settings, make_async_engine


def test_async_url_picks_async_driver() -> None:
    assert async_url("sqlite:///./k.db") == "sqlite+aiosqlite:///./k.db"
    assert async_url("postgres://u@h/db") == "postgresql+asyncpg://u@h/db"
    assert async_url("postgresql://u@h/db") == "postgresql+asyncpg://u@h/db"
    assert async_url("sqlite+aiosqlite:///x") == "sqlite+aiosqlite:///x"


def test_pool_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./k.db")
    monkeypatch.setenv("DB_POOL_SIZE", "4")
    monkeypatch.setenv("DB_GATE_LIMIT", "2")
    monkeypatch.delenv("DB_MAX_OVERFLOW", raising=False)

    settings = Settings.from_env()

    assert settings.db_pool_size == 4
    assert settings.db_max_overflow == 10
    assert settings.db_gate_limit == 2

    monkeypatch.delenv("DATABASE_URL")
    with pytest.raises(ConfigError):
        Settings.from_env()


async def test_gate_limit_from_settings(tmp_path):
    settings = Settings(database_url=f"sqlite:///{tmp_path}/k.db",
                        db_pool_size=5, db_gate_limit=1)
    engine, _, gate, gated = engine_from_settings(settings)
    try:
        async with gated():
            assert gate.locked()
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(gate.acquire(), 0.05)
        assert not gate.locked()
    finally:
        await engine.dispose()


async def test_gate_defaults_to_pool_size(tmp_path):
    engine, _, gate, _ = make_async_engine(f"sqlite:///{tmp_path}/k.db",
                                           pool_size=3)
    try:
        for _ in range(3):
            await gate.acquire()
        assert gate.locked()
    finally:
        for _ in range(3):
            gate.release()
        await engine.dispose()
