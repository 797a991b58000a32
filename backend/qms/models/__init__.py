"""SQLAlchemy models."""

from qms.models.user import User
from qms.models.queue import (
    Organization,
    Counter,
    QueueSetting,
    Token,
    ServiceSession,
    CustomerType,
    TokenStatus,
    ACTIVE_SERVICE_STATUSES,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
)
from qms.models.operations import SystemLog

__all__ = [
    "User",
    "Organization",
    "Counter",
    "QueueSetting",
    "Token",
    "ServiceSession",
    "CustomerType",
    "TokenStatus",
    "ACTIVE_SERVICE_STATUSES",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "SystemLog",
]
