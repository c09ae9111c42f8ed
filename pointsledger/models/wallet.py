from pydantic import Field

from pointsledger.models.base import Entity


class Wallet(Entity):
    """Current balance per user; `id` is the user id. Updated only by the ledger."""

    balance_minor: int = Field(default=0, ge=0)
    total_earnings_minor: int = 0
    total_spent_minor: int = 0
    total_cashouts_minor: int = 0

    @property
    def user_id(self) -> str:
        return self.id
