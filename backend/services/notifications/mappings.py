"""
Procurement Workflow Hub - Workflow Notification Mappings

A mapping says: when <eventType> happens to <entityType> in <company>
(optionally at <stageKey>), notify the recipients produced by these
resolvers over these channels, provided the conditions hold.

companyId "*" and entityType "*" are wildcards. A company-specific mapping
replaces the wildcard mapping for the same (entityType, eventType, stageKey).
"""

import time
import uuid
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Any

from services.workflow_settings import NOTIFICATION_MAPPING_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)

WILDCARD = "*"


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    IN_APP = "IN_APP"
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"
    PUSH = "PUSH"


class RecipientResolverType(str, Enum):
    REQUESTOR = "REQUESTOR"
    ENTITY_OWNER = "ENTITY_OWNER"
    CURRENT_STAGE_ROLE = "CURRENT_STAGE_ROLE"
    PREVIOUS_STAGE_ROLE = "PREVIOUS_STAGE_ROLE"
    NEXT_STAGE_ROLE = "NEXT_STAGE_ROLE"
    ACTION_PERFORMER = "ACTION_PERFORMER"
    COMPANY_ADMIN = "COMPANY_ADMIN"
    LOCATION_ADMIN = "LOCATION_ADMIN"
    FINANCE_ADMIN = "FINANCE_ADMIN"
    VENDOR = "VENDOR"
    CUSTOM = "CUSTOM"


@dataclass
class ChannelConfig:
    channel: NotificationChannel
    template_key: str
    priority: str = "NORMAL"

    def __post_init__(self):
        self.channel = NotificationChannel(self.channel)


@dataclass
class CustomRecipient:
    email: str
    name: Optional[str] = None
    role: Optional[str] = None


@dataclass
class MappingConditions:
    min_amount: Optional[float] = None
    entity_statuses: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)

    def evaluate(self, event) -> Optional[str]:
        """
        Check the conditions against an event.

        Returns:
            None when satisfied, otherwise the reason the mapping was skipped
        """
        if self.min_amount is not None and event.entity_snapshot.total_amount < self.min_amount:
            return f"amount {event.entity_snapshot.total_amount} below {self.min_amount}"
        if self.entity_statuses and event.current_status not in self.entity_statuses:
            return f"status {event.current_status} not in {self.entity_statuses}"
        if self.roles and event.triggered_by.user_role not in self.roles:
            return f"actor role {event.triggered_by.user_role} not in {self.roles}"
        return None


@dataclass
class NotificationMapping:
    """One notification rule."""
    company_id: str
    entity_type: str
    event_type: str
    recipient_resolvers: List[RecipientResolverType]
    channels: List[ChannelConfig]
    stage_key: Optional[str] = None
    custom_recipients: List[CustomRecipient] = field(default_factory=list)
    exclude_action_performer: bool = False
    conditions: MappingConditions = field(default_factory=MappingConditions)
    is_active: bool = True
    priority: int = 0
    description: Optional[str] = None
    id: str = field(default_factory=lambda: f"WNM-{uuid.uuid4().hex[:12]}")

    def __post_init__(self):
        self.recipient_resolvers = [RecipientResolverType(r) for r in self.recipient_resolvers]
        if not self.recipient_resolvers:
            raise ValueError("At least one recipient resolver is required")
        if not self.channels:
            raise ValueError("At least one channel configuration is required")

    @property
    def scope_key(self) -> tuple:
        return (self.entity_type, self.event_type, self.stage_key)

    def matches(self, event) -> bool:
        """Scope match only; conditions are evaluated separately."""
        if not self.is_active:
            return False
        if self.company_id not in (WILDCARD, event.company_id):
            return False
        if self.entity_type not in (WILDCARD, event.entity_type):
            return False
        if self.event_type != event.event_type:
            return False
        if self.stage_key is not None and self.stage_key != event.current_stage:
            return False
        return True

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "NotificationMapping":
        conditions = doc.get("conditions") or {}
        return cls(
            id=doc["id"],
            company_id=str(doc.get("company_id", WILDCARD)),
            entity_type=doc.get("entity_type", WILDCARD),
            event_type=doc["event_type"],
            stage_key=doc.get("stage_key"),
            recipient_resolvers=doc.get("recipient_resolvers") or [],
            channels=[ChannelConfig(**c) for c in doc.get("channels") or []],
            custom_recipients=[CustomRecipient(**c) for c in doc.get("custom_recipients") or []],
            exclude_action_performer=bool(doc.get("exclude_action_performer", False)),
            conditions=MappingConditions(
                min_amount=conditions.get("min_amount"),
                entity_statuses=list(conditions.get("entity_statuses") or []),
                roles=list(conditions.get("roles") or []),
            ),
            is_active=bool(doc.get("is_active", True)),
            priority=int(doc.get("priority", 0)),
            description=doc.get("description"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["recipient_resolvers"] = [r.value for r in self.recipient_resolvers]
        result["channels"] = [
            {"channel": c.channel.value, "template_key": c.template_key, "priority": c.priority}
            for c in self.channels
        ]
        return result


def select_mappings(mappings: List[NotificationMapping], event) -> List[NotificationMapping]:
    """
    Mappings that fire for an event, highest priority first.

    Company-specific mappings shadow wildcard-company mappings with the same
    (entityType, eventType, stageKey).
    """
    candidates = [m for m in mappings if m.matches(event)]
    company_scopes = {m.scope_key for m in candidates if m.company_id != WILDCARD}
    selected = [
        m for m in candidates
        if m.company_id != WILDCARD or m.scope_key not in company_scopes
    ]
    return sorted(selected, key=lambda m: m.priority, reverse=True)


# =============================================================================
# MAPPING STORES
# =============================================================================

class NotificationMappingStore(ABC):

    @abstractmethod
    async def list_for_company(self, company_id: str) -> List[NotificationMapping]:
        """Active and inactive mappings for the company plus wildcard ones."""
        pass

    @abstractmethod
    async def get(self, mapping_id: str) -> Optional[NotificationMapping]:
        pass

    @abstractmethod
    async def save(self, mapping: NotificationMapping) -> NotificationMapping:
        pass

    @abstractmethod
    async def delete(self, mapping_id: str) -> bool:
        pass


class InMemoryNotificationMappingStore(NotificationMappingStore):

    def __init__(self, mappings: Optional[List[NotificationMapping]] = None):
        self._mappings: Dict[str, NotificationMapping] = {m.id: m for m in (mappings or [])}

    async def list_for_company(self, company_id: str) -> List[NotificationMapping]:
        return [m for m in self._mappings.values() if m.company_id in (WILDCARD, company_id)]

    async def get(self, mapping_id: str) -> Optional[NotificationMapping]:
        return self._mappings.get(mapping_id)

    async def save(self, mapping: NotificationMapping) -> NotificationMapping:
        self._mappings[mapping.id] = mapping
        return mapping

    async def delete(self, mapping_id: str) -> bool:
        return self._mappings.pop(mapping_id, None) is not None


class MongoNotificationMappingStore(NotificationMappingStore):
    """
    Mappings in the workflow_notification_mappings collection.

    Reads are cached per company for NOTIFICATION_MAPPING_CACHE_TTL_SECONDS;
    writes through this store invalidate the cache immediately.
    """

    def __init__(self, db, ttl_seconds: float = NOTIFICATION_MAPPING_CACHE_TTL_SECONDS):
        self.db = db
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[str, tuple] = {}

    async def list_for_company(self, company_id: str) -> List[NotificationMapping]:
        cached = self._cache.get(company_id)
        if cached and time.monotonic() - cached[0] < self.ttl_seconds:
            return cached[1]

        docs = await self.db.workflow_notification_mappings.find(
            {"company_id": {"$in": [WILDCARD, company_id]}},
            {"_id": 0}
        ).to_list(None)

        mappings = []
        for doc in docs:
            try:
                mappings.append(NotificationMapping.from_document(doc))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Skipping malformed notification mapping %s: %s", doc.get("id"), e)

        self._cache[company_id] = (time.monotonic(), mappings)
        return mappings

    async def get(self, mapping_id: str) -> Optional[NotificationMapping]:
        doc = await self.db.workflow_notification_mappings.find_one({"id": mapping_id}, {"_id": 0})
        return NotificationMapping.from_document(doc) if doc else None

    async def save(self, mapping: NotificationMapping) -> NotificationMapping:
        doc = mapping.to_dict()
        doc["updated_utc"] = datetime.now(timezone.utc).isoformat()
        await self.db.workflow_notification_mappings.update_one(
            {"id": mapping.id}, {"$set": doc}, upsert=True
        )
        self._cache.clear()
        return mapping

    async def delete(self, mapping_id: str) -> bool:
        result = await self.db.workflow_notification_mappings.delete_one({"id": mapping_id})
        self._cache.clear()
        return result.deleted_count > 0
