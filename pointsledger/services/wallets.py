"""Wallet reads. Wallets are created lazily by the ledger and never deleted."""

from pointsledger.core.exceptions import InsufficientBalanceError, ValidationError
from pointsledger.models import Transaction, TransactionType, Wallet
from pointsledger.store.base import UnitOfWork, get_store


def require_id(value: str | None, field: str = "user_id") -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field} is required", details={"field": field})
    return value


async def get_wallet(user_id: str) -> Wallet:
    """Return the user's wallet; an untouched user reads as an empty, unsaved wallet."""
    user_id = require_id(user_id)
    wallet = await get_store().get_wallet(user_id)
    return wallet or Wallet(id=user_id)


async def get_balance(user_id: str) -> int:
    """Return current balance in minor units (0 if no record)."""
    return (await get_wallet(user_id)).balance_minor


async def list_wallets(limit: int = 50, offset: int = 0) -> list[Wallet]:
    return await get_store().list_wallets(limit=limit, offset=offset)


async def wallet_for_update(uow: UnitOfWork, user_id: str) -> Wallet:
    wallet = await uow.get_wallet(user_id)
    return wallet or Wallet(id=user_id)


def apply_to_wallet(wallet: Wallet, tx: Transaction, totals_type: TransactionType | None = None) -> None:
    """
    Apply a completed entry to the wallet and stamp `balance_after` on it.
    `totals_type` lets a compensating entry unwind the running total of the entry it reverses.
    """
    balance_after = wallet.balance_minor + tx.amount_minor
    if balance_after < 0:
        raise InsufficientBalanceError(
            details={"user_id": wallet.id, "balance_minor": wallet.balance_minor, "amount_minor": tx.amount_minor}
        )
    kind = totals_type or tx.type
    if kind == TransactionType.EARNING:
        wallet.total_earnings_minor += tx.amount_minor
    elif kind == TransactionType.PURCHASE:
        wallet.total_spent_minor -= tx.amount_minor
    elif kind == TransactionType.CASHOUT:
        wallet.total_cashouts_minor -= tx.amount_minor
    wallet.balance_minor = balance_after
    wallet.touch()
    tx.balance_after = balance_after
