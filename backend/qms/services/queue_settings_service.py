"""Queue settings administration: numbering prefixes, activity and resets."""

import logging
from typing import Annotated, List, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from qms.core.clock import Clock, system_clock
from qms.core.config import Settings, settings as default_settings
from qms.core.errors import NotFoundError
from qms.db.session import DbSession
from qms.models.queue import CustomerType, QueueSetting
from qms.schemas.queue import QueueSettingUpdate
from qms.services.audit_service import log_action
from qms.services.broadcaster import EventBroadcaster, EventOutbox, ws_broadcaster
from qms.services.queue_repository import QueueRepository
from qms.services.queue_status_service import QueueStatusService

logger = logging.getLogger(__name__)

SETTING_DEFAULTS = {
    "max_number": 999,
    "reset_daily": True,
    "reset_time": "00:00:00",
    "is_active": True,
    "priority_multiplier": 1.0,
}


def default_prefix(customer_type: CustomerType) -> str:
    return customer_type.value[0].upper()


class QueueSettingsService:
    def __init__(
        self,
        db: Session,
        clock: Clock = system_clock,
        broadcaster: Optional[EventBroadcaster] = None,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings
        self.broadcaster = broadcaster if broadcaster is not None else ws_broadcaster
        self.repository = QueueRepository(db)

    def list_settings(self, organization_id: int) -> List[QueueSetting]:
        return self.repository.list_settings(organization_id)

    def update_setting(
        self,
        update: QueueSettingUpdate,
        organization_id: int,
        user_id: Optional[int] = None,
    ) -> QueueSetting:
        """Create or update the setting of one customer type.

        New rows start from the defaults with the type's initial letter as
        prefix and a sequence at 0.
        """
        changes = update.model_dump(exclude_unset=True, exclude={"customer_type"})
        with self.repository.transaction("update queue settings"):
            setting = self.repository.get_setting(organization_id, update.customer_type)
            created = setting is None
            if created:
                setting = QueueSetting(
                    organization_id=organization_id,
                    customer_type=update.customer_type,
                    prefix=default_prefix(update.customer_type),
                    current_number=0,
                    **SETTING_DEFAULTS,
                )
                self.db.add(setting)

            for field, value in changes.items():
                if value is not None:
                    setattr(setting, field, value)
            self.db.flush()

            log_action(
                self.db,
                organization_id=organization_id,
                action="queue_settings_updated",
                entity_type="queue_setting",
                entity_id=setting.id,
                user_id=user_id,
                details={"customer_type": update.customer_type.value, "created": created, **changes},
                created_at=self.clock.now(),
            )

        logger.info(
            f"Queue settings {'created' if created else 'updated'}: org={organization_id} "
            f"type={update.customer_type.value}"
        )
        self._publish_snapshot(organization_id)
        return setting

    def reset_queue(
        self,
        customer_type: CustomerType,
        organization_id: int,
        user_id: Optional[int] = None,
    ) -> QueueSetting:
        """Restart numbering at 1 for the next token of this type."""
        with self.repository.transaction("reset queue"):
            setting = self.repository.get_setting(organization_id, customer_type)
            if setting is None:
                logger.warning(
                    f"Could not reset queue: org={organization_id} type={customer_type.value}: no settings"
                )
                raise NotFoundError("Queue settings not found", {"customer_type": customer_type.value})

            previous = setting.current_number
            self.repository.reset_sequence(setting.id)
            log_action(
                self.db,
                organization_id=organization_id,
                action="queue_reset",
                entity_type="queue_setting",
                entity_id=setting.id,
                user_id=user_id,
                details={"customer_type": customer_type.value, "previous_number": previous},
                created_at=self.clock.now(),
            )

        self.db.refresh(setting)
        logger.info(f"Queue reset: org={organization_id} type={customer_type.value} (was {previous})")
        self._publish_snapshot(organization_id)
        return setting

    def _publish_snapshot(self, organization_id: int) -> None:
        if not self.settings.broadcast_queue_snapshots:
            return
        outbox = EventOutbox()
        snapshot = QueueStatusService(self.db, self.clock, self.settings).get_queue_status(organization_id)
        outbox.add(organization_id, "queue:updated", snapshot.model_dump(mode="json"))
        outbox.flush(self.broadcaster)


def get_queue_settings_service(db: DbSession) -> QueueSettingsService:
    return QueueSettingsService(db)


QueueSettingsServiceDep = Annotated[QueueSettingsService, Depends(get_queue_settings_service)]
