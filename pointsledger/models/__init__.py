from pointsledger.models.audit_log import AuditLog
from pointsledger.models.cashout import CashoutRequest, CashoutStatus
from pointsledger.models.failed_job import FailedJob
from pointsledger.models.post import Post, PostStatus
from pointsledger.models.subscription import PostSubscription, SubscriptionStatus
from pointsledger.models.transaction import Transaction, TransactionStatus, TransactionType
from pointsledger.models.wallet import Wallet

__all__ = [
    "AuditLog",
    "CashoutRequest",
    "CashoutStatus",
    "FailedJob",
    "Post",
    "PostStatus",
    "PostSubscription",
    "SubscriptionStatus",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "Wallet",
]
