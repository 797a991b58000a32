# Services module

from qms.services.token_service import TokenService
from qms.services.queue_status_service import QueueStatusService
from qms.services.queue_settings_service import QueueSettingsService
from qms.services.queue_ranker import QueueRanker
from qms.services.queue_repository import QueueRepository
from qms.services.sequence_allocator import SequenceAllocator
from qms.services.session_tracker import SessionTracker

# Real-time delivery
from qms.services.broadcaster import (
    ConnectionManager,
    EventBroadcaster,
    EventOutbox,
    WebSocketBroadcaster,
    org_room,
    ws_broadcaster,
    ws_manager,
)

__all__ = [
    "TokenService",
    "QueueStatusService",
    "QueueSettingsService",
    "QueueRanker",
    "QueueRepository",
    "SequenceAllocator",
    "SessionTracker",
    "ConnectionManager",
    "EventBroadcaster",
    "EventOutbox",
    "WebSocketBroadcaster",
    "org_room",
    "ws_broadcaster",
    "ws_manager",
]
