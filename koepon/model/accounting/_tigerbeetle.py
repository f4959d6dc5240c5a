import os
import uuid
from typing import Dict, Optional

import tigerbeetle as tb

from ...logger import get_logger

log = get_logger(__name__)


LedgerMedals = 3000

# code of every account on the medal ledger
AccountCode = 30

# transfer codes
CodeCredit = 1
CodeSpend = 2

# Medals are minted from the operator account (may go negative) into user
# wallets; spent medals flow from the wallet into the exchange account.
Operator = tb.Account(id=3100, ledger=LedgerMedals, code=AccountCode)
Exchange = tb.Account(id=3190, ledger=LedgerMedals, code=AccountCode)

_ID_NAMESPACE = uuid.UUID("6f1c3c1e-1f4b-4b8e-9a52-6b6f65706f6e")


def wallet_id(user_id: str) -> int:
    return uuid.uuid5(_ID_NAMESPACE, f"wallet:{user_id}").int


def _credit_transfer_id(transfer_key: str) -> int:
    # deterministic: replaying the same key yields EXISTS instead of a second
    # credit
    return uuid.uuid5(_ID_NAMESPACE, f"credit:{transfer_key}").int


def _wallet(user_id: str) -> tb.Account:
    return tb.Account(
        id=wallet_id(user_id), ledger=LedgerMedals, code=AccountCode,
        flags=tb.AccountFlags.DEBITS_MUST_NOT_EXCEED_CREDITS,
    )


def connect(address: str, cluster_id: int = 0) -> tb.ClientAsync:
    return tb.ClientAsync(cluster_id=cluster_id, replica_addresses=address)


def _only_exists(errors, exists) -> bool:
    return all(e.result == exists for e in errors)


async def create_accounts(client: tb.ClientAsync) -> bool:
    account_errors = await client.create_accounts([Operator, Exchange])
    if account_errors and not _only_exists(
            account_errors, tb.CreateAccountResult.EXISTS):
        log.error("creating ledger accounts failed: %s", account_errors)
        return False
    log.info("medal ledger accounts ready")
    return True


async def ensure_wallet(client: tb.ClientAsync, user_id: str) -> None:
    errors = await client.create_accounts([_wallet(user_id)])
    if errors and not _only_exists(errors, tb.CreateAccountResult.EXISTS):
        raise RuntimeError(f"cannot create wallet: {errors[0].result}")


async def credit(
    client: tb.ClientAsync, user_id: str, amount: int, transfer_key: str,
) -> bool:
    if amount <= 0:
        raise ValueError("amount must be positive")
    await ensure_wallet(client, user_id)
    errors = await client.create_transfers([
        tb.Transfer(
            id=_credit_transfer_id(transfer_key),
            debit_account_id=Operator.id,
            credit_account_id=wallet_id(user_id),
            amount=amount,
            ledger=LedgerMedals,
            code=CodeCredit,
        ),
    ])
    if not errors:
        return True
    if errors[0].result == tb.CreateTransferResult.EXISTS:
        return False
    raise RuntimeError(f"credit failed: {errors[0].result}")


async def reserve(
    client: tb.ClientAsync, user_id: str, amount: int, timeout_seconds: int,
) -> Optional[str]:
    if amount <= 0:
        raise ValueError("amount must be positive")
    await ensure_wallet(client, user_id)
    hold_id = tb.id()
    errors = await client.create_transfers([
        tb.Transfer(
            id=hold_id,
            debit_account_id=wallet_id(user_id),
            credit_account_id=Exchange.id,
            amount=amount,
            ledger=LedgerMedals,
            code=CodeSpend,
            timeout=max(0, int(timeout_seconds)),
            flags=tb.TransferFlags.PENDING,
        ),
    ])
    if not errors:
        return str(hold_id)
    if errors[0].result == tb.CreateTransferResult.EXCEEDS_CREDITS:
        return None
    raise RuntimeError(f"reserve failed: {errors[0].result}")


async def commit(
    client: tb.ClientAsync, hold_id: str, user_id: str, amount: int,
) -> bool:
    errors = await client.create_transfers([
        tb.Transfer(
            id=tb.id(),
            debit_account_id=wallet_id(user_id),
            credit_account_id=Exchange.id,
            amount=amount,
            pending_id=int(hold_id),
            ledger=LedgerMedals,
            code=CodeSpend,
            flags=tb.TransferFlags.POST_PENDING_TRANSFER,
        ),
    ])
    return not errors


async def release(
    client: tb.ClientAsync, hold_id: str, user_id: str, amount: int,
) -> None:
    errors = await client.create_transfers([
        tb.Transfer(
            id=tb.id(),
            debit_account_id=wallet_id(user_id),
            credit_account_id=Exchange.id,
            amount=amount,
            pending_id=int(hold_id),
            ledger=LedgerMedals,
            code=CodeSpend,
            flags=tb.TransferFlags.VOID_PENDING_TRANSFER,
        ),
    ])
    if errors:
        # already posted, voided or expired
        log.info("release of hold %s ignored: %s", hold_id, errors[0].result)


async def balance(client: tb.ClientAsync, user_id: str) -> Dict[str, int]:
    accounts = await client.lookup_accounts([wallet_id(user_id)])
    if not accounts:
        return {"earned": 0, "used": 0, "locked": 0, "available": 0,
                "total": 0}
    acc = accounts[0]
    earned = int(acc.credits_posted)
    used = int(acc.debits_posted)
    locked = int(acc.debits_pending)
    available = earned - used - locked
    return {
        "earned": earned,
        "used": used,
        "locked": locked,
        "available": available,
        "total": available + locked,
    }


if __name__ == '__main__':
    import asyncio

    async def _main():
        client = connect(os.getenv("TB_ADDRESS", "3000"),
                         int(os.getenv("TB_CLUSTER_ID", "0")))
        try:
            await create_accounts(client)
        finally:
            await client.close()

    asyncio.run(_main())
