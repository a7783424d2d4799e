"""
Procurement Workflow Hub - Notification Dispatch Contract

What the orchestrator hands to a delivery collaborator. Transport lives
behind NotificationSender; this package never opens a connection itself.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from services.notifications.recipients import Recipient


@dataclass
class NotificationDispatch:
    recipient: Recipient
    channel: str
    template_key: str
    context: Dict[str, Any] = field(default_factory=dict)
    mapping_id: Optional[str] = None
    event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": {
                "email": self.recipient.email,
                "name": self.recipient.name,
                "role": self.recipient.role,
            },
            "channel": self.channel,
            "template_key": self.template_key,
            "context": self.context,
            "mapping_id": self.mapping_id,
            "event_id": self.event_id,
        }


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()


class NotificationSender(ABC):
    """Delivery collaborator. Raising signals a transient failure worth retrying."""

    @abstractmethod
    async def send(self, dispatch: NotificationDispatch) -> SendResult:
        pass
