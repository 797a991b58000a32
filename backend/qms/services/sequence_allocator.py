"""Token number allocation."""

import logging

from qms.core.config import Settings, settings as default_settings
from qms.core.errors import NotActiveError
from qms.models.queue import CustomerType
from qms.services.queue_repository import QueueRepository

logger = logging.getLogger(__name__)


class SequenceAllocator:
    """Hands out "prefix + zero-padded number" identifiers per queue.

    Must be called inside the caller's transaction: the increment is only
    made durable (and visible to others) when that transaction commits, and
    a rollback gives the number back.
    """

    def __init__(self, repository: QueueRepository, settings: Settings = default_settings):
        self.repository = repository
        self.settings = settings

    def format_number(self, prefix: str, value: int) -> str:
        return f"{prefix}{value:0{self.settings.token_number_padding}d}"

    def next_number(self, organization_id: int, customer_type: CustomerType) -> str:
        setting = self.repository.get_active_setting(organization_id, customer_type)
        if setting is None:
            raise NotActiveError(
                f"Queue not active for customer type: {customer_type.value}",
                {"organization_id": organization_id, "customer_type": customer_type.value},
            )

        value = self.repository.increment_sequence(setting.id)
        if value is None:
            # Deactivated between the read and the increment
            raise NotActiveError(
                f"Queue not active for customer type: {customer_type.value}",
                {"organization_id": organization_id, "customer_type": customer_type.value},
            )

        if self.settings.enforce_max_number and value > setting.max_number:
            raise NotActiveError(
                f"Queue exhausted for customer type: {customer_type.value}",
                {"max_number": setting.max_number},
            )

        number = self.format_number(setting.prefix, value)
        logger.debug(f"Allocated {number} for org={organization_id} type={customer_type.value}")
        return number
