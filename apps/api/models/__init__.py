"""Models package."""

from .profile import Profile
from .credit_ledger import CreditTransaction
from .batch_credit_transaction import BatchCreditTransaction
from .audit import AuditLog
from .webhook_event import WebhookEvent
