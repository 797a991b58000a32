"""Audit logging service.

Queue transitions write their audit entry through ``log_action`` with the
caller's session, so the entry commits or rolls back together with the
transition it describes.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from qms.models.operations import SystemLog

logger = logging.getLogger("audit")


def log_action(
    db: Session,
    organization_id: int,
    action: str,
    entity_type: str = "",
    entity_id: Any = "",
    user_id: Optional[int] = None,
    details: Optional[dict[str, Any]] = None,
    ip_address: str = "",
    created_at: Optional[datetime] = None,
) -> SystemLog:
    """Add an audit log entry to the current transaction.

    Args:
        db: Session of the surrounding unit of work. The entry is flushed,
            not committed.
        organization_id: Tenant the action belongs to
        action: The action performed (token_created, token_called, ...)
        entity_type: Type of entity affected (token, queue_setting, ...)
        entity_id: ID of the affected entity
        user_id: ID of the user performing the action
        details: Additional details (token number, durations, ...)
        ip_address: Client IP address
        created_at: Timestamp, defaults to now (UTC)
    """
    entry = SystemLog(
        organization_id=organization_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id else "",
        details=details or {},
        ip_address=ip_address or "",
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(entry)
    db.flush()
    logger.debug(f"Audit: org={organization_id} user={user_id} {action} {entity_type}:{entity_id}")
    return entry
