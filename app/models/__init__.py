from app.models.user import User
from app.models.credit_account import CreditAccount
from app.models.transaction import Transaction
from app.models.job import Job
from app.models.application import Application
from app.models.message import Message
from app.models.subscription_plan import SubscriptionPlan
from app.models.review import Review
from app.models.audit_log import AuditLog
from app.models.failed_job import FailedJob

__all__ = [
    "User",
    "CreditAccount",
    "Transaction",
    "Job",
    "Application",
    "Message",
    "SubscriptionPlan",
    "Review",
    "AuditLog",
    "FailedJob",
]
