"""Durable storage of tokens, queue settings and the transactional primitives
the queue engine relies on.

Two primitives carry the concurrency guarantees:

* ``increment_sequence`` bumps ``QueueSetting.current_number`` with a single
  ``UPDATE ... SET current_number = current_number + 1`` so concurrent
  allocators never read-then-write the counter in Python.
* ``transition_token`` is a compare-and-set: the UPDATE is conditioned on
  the token still being in one of the expected source states, so a racing
  caller sees zero affected rows instead of double-transitioning a token.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from qms.core.errors import QueueError, StorageError
from qms.models.queue import CustomerType, QueueSetting, Token, TokenStatus

logger = logging.getLogger(__name__)


class QueueRepository:
    """SQLAlchemy-backed repository scoped to one request session."""

    def __init__(self, db: Session):
        self.db = db

    # ==================== UNIT OF WORK ====================

    @contextmanager
    def transaction(self, operation: str) -> Iterator[Session]:
        """Commit on success, roll back on any error.

        Infrastructure failures are wrapped in ``StorageError``; typed queue
        errors propagate unchanged.
        """
        try:
            yield self.db
            self.db.commit()
        except QueueError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to {operation}", {"original_error": str(e)}) from e

    # ==================== QUEUE SETTINGS ====================

    def get_setting(self, organization_id: int, customer_type: CustomerType) -> Optional[QueueSetting]:
        return self.db.execute(
            select(QueueSetting).where(
                QueueSetting.organization_id == organization_id,
                QueueSetting.customer_type == customer_type,
            )
        ).scalar_one_or_none()

    def get_active_setting(
        self, organization_id: int, customer_type: CustomerType
    ) -> Optional[QueueSetting]:
        return self.db.execute(
            select(QueueSetting).where(
                QueueSetting.organization_id == organization_id,
                QueueSetting.customer_type == customer_type,
                QueueSetting.is_active.is_(True),
            )
        ).scalar_one_or_none()

    def list_settings(self, organization_id: int, active_only: bool = False) -> List[QueueSetting]:
        query = select(QueueSetting).where(QueueSetting.organization_id == organization_id)
        if active_only:
            query = query.where(QueueSetting.is_active.is_(True))
        return list(self.db.execute(query.order_by(QueueSetting.customer_type)).scalars())

    def increment_sequence(self, setting_id: int) -> Optional[int]:
        """Atomically increment ``current_number`` and return the new value.

        Returns None when the setting is missing or was deactivated since it
        was read. The read-back happens inside the same transaction, after
        the UPDATE has taken the row lock.
        """
        result = self.db.execute(
            update(QueueSetting)
            .where(QueueSetting.id == setting_id, QueueSetting.is_active.is_(True))
            .values(current_number=QueueSetting.current_number + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return self.db.execute(
            select(QueueSetting.current_number).where(QueueSetting.id == setting_id)
        ).scalar_one()

    def reset_sequence(self, setting_id: int) -> None:
        self.db.execute(
            update(QueueSetting)
            .where(QueueSetting.id == setting_id)
            .values(current_number=0)
            .execution_options(synchronize_session=False)
        )

    # ==================== TOKENS ====================

    def insert_token(self, **fields: Any) -> Token:
        token = Token(**fields)
        self.db.add(token)
        self.db.flush()
        return token

    def get_token(
        self,
        token_id: int,
        organization_id: int,
        statuses: Optional[Iterable[TokenStatus]] = None,
    ) -> Optional[Token]:
        query = select(Token).where(
            Token.id == token_id,
            Token.organization_id == organization_id,
        )
        if statuses is not None:
            query = query.where(Token.status.in_(list(statuses)))
        return self.db.execute(query).scalar_one_or_none()

    def get_tokens(self, token_ids: Iterable[int], organization_id: int) -> List[Token]:
        return list(
            self.db.execute(
                select(Token)
                .where(Token.id.in_(list(token_ids)), Token.organization_id == organization_id)
                .order_by(Token.id)
            ).scalars()
        )

    def transition_token(
        self,
        token_id: int,
        organization_id: int,
        from_statuses: Iterable[TokenStatus],
        **values: Any,
    ) -> Optional[Token]:
        """Compare-and-set update of a token.

        Applies *values* only if the token is still in one of
        *from_statuses*. Returns the refreshed token, or None if another
        caller got there first (or the token never qualified).
        """
        result = self.db.execute(
            update(Token)
            .where(
                Token.id == token_id,
                Token.organization_id == organization_id,
                Token.status.in_(list(from_statuses)),
            )
            .values({getattr(Token, key): value for key, value in values.items()})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return self.db.get(Token, token_id, populate_existing=True)
