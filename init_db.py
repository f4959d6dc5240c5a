"""
Create the schema (and TigerBeetle accounts with ACCT_BACKEND=tb), then
insert the demo catalog and accounts.

    DATABASE_URL=sqlite:///./koepon.db python init_db.py
    DATABASE_URL=... python init_db.py --no-seed
"""
import argparse
import asyncio

from koepon.config import Settings
from koepon.infra.sql import engine_from_settings
from koepon.logger import setup_logger
from koepon.model import accounting
from koepon.model.accounting._postgres import GatedAsyncSession
from koepon.model.orm import Base
from koepon.model.paymentsession._postgres import (
    create_schema as create_paysession_schema,
)
from koepon.seed import seed_demo_data
from koepon.services.medals import MedalService


async def init_db(settings: Settings, seed: bool) -> None:
    log = setup_logger(settings.service_name, settings.log_level)
    engine, SessionAsync, _, gated = engine_from_settings(settings)
    ledger = accounting.get_backend(settings.acct_backend)
    tb_client = None
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            if settings.acct_backend == "pg":
                await ledger.create_accounts(conn)
            await create_paysession_schema(conn)
        if settings.acct_backend == "tb":
            tb_client = ledger.connect(settings.tb_address,
                                       settings.tb_cluster_id)
            if not await ledger.create_accounts(tb_client):
                raise SystemExit(1)
        log.info("schema ready")

        if seed:
            async with SessionAsync() as db, SessionAsync() as acs:
                ac = (GatedAsyncSession(session=acs, gated=gated)
                      if tb_client is None else tb_client)
                created = await seed_demo_data(
                    db, gated, MedalService(db, gated, ledger, ac),
                    rounds=settings.bcrypt_rounds,
                )
            log.info("demo data %s", "inserted" if created else
                     "already present")
    finally:
        if tb_client is not None:
            await tb_client.close()
        await engine.dispose()


if __name__ == '__main__':
    ap = argparse.ArgumentParser(description="Initialise the Koepon database")
    ap.add_argument("--no-seed", action="store_true",
                    help="Only create the schema")
    args = ap.parse_args()
    asyncio.run(init_db(Settings.from_env(), seed=not args.no_seed))
