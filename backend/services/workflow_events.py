"""
Procurement Workflow Hub - Workflow Event Bus

In-process publish/subscribe for workflow transitions.

The engine emits one WorkflowEvent per committed transition. Subscribers
(notification orchestrator, audit hooks) run as separate asyncio tasks, so a
slow or failing subscriber never delays or fails the transition that
produced the event.
"""

import asyncio
import fnmatch
import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Any, Callable, Awaitable, Tuple

logger = logging.getLogger(__name__)


class WorkflowEventType(str, Enum):
    ENTITY_SUBMITTED = "ENTITY_SUBMITTED"
    ENTITY_RESUBMITTED = "ENTITY_RESUBMITTED"
    ENTITY_APPROVED_AT_STAGE = "ENTITY_APPROVED_AT_STAGE"
    ENTITY_APPROVED = "ENTITY_APPROVED"
    ENTITY_REJECTED = "ENTITY_REJECTED"
    ENTITY_CANCELLED = "ENTITY_CANCELLED"
    PO_CREATED = "PO_CREATED"


def _to_base36(value: int) -> str:
    digits = string.digits + string.ascii_lowercase
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def generate_event_id() -> str:
    """WFE-<base36 millis>-<random suffix>"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"WFE-{_to_base36(int(time.time() * 1000))}-{suffix}"


# =============================================================================
# EVENT SCHEMA
# =============================================================================

@dataclass(frozen=True)
class TriggeredBy:
    user_id: str
    user_name: Optional[str]
    user_role: str
    user_email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "userId": self.user_id,
            "userName": self.user_name,
            "userRole": self.user_role,
        }
        if self.user_email:
            result["userEmail"] = self.user_email
        return result


@dataclass(frozen=True)
class RejectionInfo:
    reason_code: str
    reason_label: str
    remarks: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"reasonCode": self.reason_code, "reasonLabel": self.reason_label}
        if self.remarks:
            result["remarks"] = self.remarks
        return result


@dataclass(frozen=True)
class EntitySnapshot:
    display_id: Optional[str] = None
    created_by: Optional[str] = None
    created_by_email: Optional[str] = None
    created_by_name: Optional[str] = None
    total_amount: float = 0.0
    item_count: int = 0
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "displayId": self.display_id,
            "createdBy": self.created_by,
            "createdByEmail": self.created_by_email,
            "createdByName": self.created_by_name,
            "totalAmount": self.total_amount,
            "itemCount": self.item_count,
            "vendorId": self.vendor_id,
            "vendorName": self.vendor_name,
            "locationId": self.location_id,
            "locationName": self.location_name,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "EntitySnapshot":
        vendor = doc.get("vendorId")
        items = doc.get("items") or []
        return cls(
            display_id=doc.get("pr_number") or doc.get("prNumber") or doc.get("id"),
            created_by=doc.get("employeeId"),
            created_by_email=doc.get("employeeEmail"),
            created_by_name=doc.get("employeeName"),
            total_amount=float(doc.get("total_amount") or doc.get("total") or 0),
            item_count=len(items),
            vendor_id=vendor.get("id") if isinstance(vendor, dict) else vendor,
            vendor_name=doc.get("vendorName"),
            location_id=doc.get("locationId"),
            location_name=doc.get("locationName"),
        )


@dataclass(frozen=True)
class WorkflowEvent:
    """Immutable fact describing one committed transition."""
    event_type: str
    company_id: str
    entity_type: str
    entity_id: str
    current_stage: Optional[str]
    current_status: str
    triggered_by: TriggeredBy
    entity_snapshot: EntitySnapshot
    previous_stage: Optional[str] = None
    previous_status: Optional[str] = None
    rejection: Optional[RejectionInfo] = None
    event_id: str = field(default_factory=generate_event_id)
    event_timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "eventTimestamp": self.event_timestamp,
            "companyId": self.company_id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "currentStage": self.current_stage,
            "currentStatus": self.current_status,
            "triggeredBy": self.triggered_by.to_dict(),
            "entitySnapshot": self.entity_snapshot.to_dict(),
        }
        if self.previous_stage is not None:
            result["previousStage"] = self.previous_stage
        if self.previous_status is not None:
            result["previousStatus"] = self.previous_status
        if self.rejection is not None:
            result["rejection"] = self.rejection.to_dict()
        return result


# =============================================================================
# EVENT BUS
# =============================================================================

EventHandler = Callable[[WorkflowEvent], Awaitable[Any]]


class WorkflowEventBus:
    """
    Fire-and-forget dispatcher.

    Usage:
        bus = WorkflowEventBus()
        unsubscribe = bus.subscribe("ENTITY_APPROVED*", handler)
        bus.emit(event)
        await bus.drain()
    """

    def __init__(self):
        self._subscriptions: List[Tuple[str, EventHandler]] = []
        self._tasks: set = set()

    def subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        """
        Register a handler for an event type or fnmatch pattern.

        Returns:
            A callable that removes this subscription.
        """
        entry = (pattern, handler)
        self._subscriptions.append(entry)
        logger.debug("Subscribed %s to %s", getattr(handler, "__name__", handler), pattern)

        def unsubscribe():
            if entry in self._subscriptions:
                self._subscriptions.remove(entry)

        return unsubscribe

    def _handlers_for(self, event_type: str) -> List[EventHandler]:
        return [h for pattern, h in self._subscriptions if fnmatch.fnmatchcase(event_type, pattern)]

    def emit(self, event: WorkflowEvent) -> int:
        """
        Schedule every matching handler and return immediately.

        Returns:
            Number of handlers scheduled. Never raises.
        """
        try:
            handlers = self._handlers_for(event.event_type)
            if not handlers:
                logger.info("No subscribers for %s (event %s dropped)", event.event_type, event.event_id)
                return 0

            loop = asyncio.get_running_loop()
            for handler in handlers:
                task = loop.create_task(self._run_handler(handler, event))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            return len(handlers)
        except Exception as e:
            logger.error("Failed to emit %s: %s", getattr(event, "event_id", "?"), e)
            return 0

    async def _run_handler(self, handler: EventHandler, event: WorkflowEvent):
        try:
            await handler(event)
        except Exception as e:
            logger.error(
                "Workflow event handler %s failed for %s (%s): %s",
                getattr(handler, "__name__", handler), event.event_id, event.event_type, e
            )

    async def drain(self):
        """Wait for in-flight handler tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
