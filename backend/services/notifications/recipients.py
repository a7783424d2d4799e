"""
Procurement Workflow Hub - Recipient Resolution

Turns a mapping's resolver list into concrete recipients for one event.
Role holders come from a UserDirectory, and NEXT_STAGE_ROLE follows the
company's enabled stages when a config provider is wired in. Nothing here
writes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Optional, Dict, List, Any, Tuple

from services.workflow_config import (
    ApprovalStage,
    CompanyConfigProvider,
    CompanyWorkflowConfig,
    Role,
    STAGE_TABLE,
    STAGES_BY_NAME,
)
from services.workflow_engine import next_stage
from services.notifications.mappings import NotificationMapping, RecipientResolverType

logger = logging.getLogger(__name__)

# Roles whose holders are scoped to a single location
LOCATION_SCOPED_ROLES = {Role.SITE_ADMIN.value, Role.LOCATION_ADMIN.value}


@dataclass
class Recipient:
    email: str
    name: Optional[str] = None
    role: Optional[str] = None
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# USER DIRECTORY
# =============================================================================

class UserDirectory(ABC):

    @abstractmethod
    async def get_user(self, company_id: str, user_id: str) -> Optional[Recipient]:
        pass

    @abstractmethod
    async def users_with_roles(
        self,
        company_id: str,
        roles: List[str],
        location_id: Optional[str] = None
    ) -> List[Recipient]:
        pass

    @abstractmethod
    async def vendor_contacts(self, vendor_id: str) -> List[Recipient]:
        pass


class InMemoryUserDirectory(UserDirectory):
    """
    Directory over plain user dicts:
    {id, company_id, role, email, name, location_id}
    """

    def __init__(self, users: Optional[List[Dict[str, Any]]] = None, vendors: Optional[List[Dict[str, Any]]] = None):
        self.users = users or []
        self.vendors = vendors or []

    @staticmethod
    def _recipient(user: Dict[str, Any]) -> Recipient:
        return Recipient(email=user["email"], name=user.get("name"), role=user.get("role"), user_id=user.get("id"))

    async def get_user(self, company_id: str, user_id: str) -> Optional[Recipient]:
        for user in self.users:
            if user.get("id") == user_id and user.get("company_id") == company_id:
                return self._recipient(user)
        return None

    async def users_with_roles(self, company_id, roles, location_id=None) -> List[Recipient]:
        result = []
        for user in self.users:
            if user.get("company_id") != company_id or user.get("role") not in roles:
                continue
            if location_id and user.get("role") in LOCATION_SCOPED_ROLES and user.get("location_id") != location_id:
                continue
            result.append(self._recipient(user))
        return result

    async def vendor_contacts(self, vendor_id: str) -> List[Recipient]:
        return [
            Recipient(email=v["email"], name=v.get("name"), role=Role.VENDOR.value, user_id=v.get("id"))
            for v in self.vendors if v.get("id") == vendor_id and v.get("email")
        ]


class MongoUserDirectory(UserDirectory):
    """Reads the users and vendors collections."""

    def __init__(self, db):
        self.db = db

    @staticmethod
    def _recipient(doc: Dict[str, Any]) -> Recipient:
        return Recipient(
            email=doc.get("email"),
            name=doc.get("name") or doc.get("firstName"),
            role=doc.get("role"),
            user_id=doc.get("id"),
        )

    async def get_user(self, company_id: str, user_id: str) -> Optional[Recipient]:
        doc = await self.db.users.find_one({"id": user_id, "companyId": company_id}, {"_id": 0})
        if not doc or not doc.get("email"):
            return None
        return self._recipient(doc)

    async def users_with_roles(self, company_id, roles, location_id=None) -> List[Recipient]:
        query: Dict[str, Any] = {"companyId": company_id, "role": {"$in": list(roles)}, "isActive": {"$ne": False}}
        docs = await self.db.users.find(query, {"_id": 0}).to_list(None)
        result = []
        for doc in docs:
            if not doc.get("email"):
                continue
            if location_id and doc.get("role") in LOCATION_SCOPED_ROLES and doc.get("locationId") != location_id:
                continue
            result.append(self._recipient(doc))
        return result

    async def vendor_contacts(self, vendor_id: str) -> List[Recipient]:
        doc = await self.db.vendors.find_one({"id": vendor_id}, {"_id": 0})
        if not doc:
            return []
        email = doc.get("contactEmail") or doc.get("email")
        if not email:
            return []
        return [Recipient(email=email, name=doc.get("name"), role=Role.VENDOR.value, user_id=vendor_id)]


# =============================================================================
# RESOLVER
# =============================================================================

def _stage_roles(stage_key: Optional[str]) -> List[str]:
    try:
        stage = ApprovalStage(stage_key)
    except ValueError:
        return []
    return [r.value for r in STAGES_BY_NAME[stage].allowed_roles]


def _following_stage(stage_key: Optional[str], config: Optional[CompanyWorkflowConfig]) -> Optional[str]:
    """Stage after `stage_key` among the company's enabled stages."""
    try:
        stage = ApprovalStage(stage_key)
    except ValueError:
        return None
    if config is None:
        names = [s.stage for s in STAGE_TABLE]
        position = names.index(stage)
        return names[position + 1].value if position + 1 < len(names) else None
    following = next_stage(config, stage)
    return following.stage.value if following else None


class RecipientResolver:
    """
    Resolve, dedupe and filter recipients for (mapping, event).

    A failing resolver is recorded in the returned error list; the remaining
    resolvers still run.
    """

    def __init__(self, directory: UserDirectory, config_provider: Optional[CompanyConfigProvider] = None):
        self.directory = directory
        self.config_provider = config_provider

    async def resolve(self, mapping: NotificationMapping, event) -> Tuple[List[Recipient], List[Dict[str, str]]]:
        collected: List[Recipient] = []
        errors: List[Dict[str, str]] = []

        for resolver in mapping.recipient_resolvers:
            try:
                collected.extend(await self._resolve_one(resolver, mapping, event))
            except Exception as e:
                logger.warning(
                    "Recipient resolver %s failed for mapping %s (event %s): %s",
                    resolver.value, mapping.id, event.event_id, e
                )
                errors.append({"resolver": resolver.value, "error": str(e)})

        recipients = self._dedupe(collected)
        if mapping.exclude_action_performer:
            performer_email = (event.triggered_by.user_email or "").lower()
            recipients = [
                r for r in recipients
                if r.user_id != event.triggered_by.user_id
                and (not performer_email or r.email.lower() != performer_email)
            ]
        return recipients, errors

    @staticmethod
    def _dedupe(recipients: List[Recipient]) -> List[Recipient]:
        seen = set()
        unique = []
        for recipient in recipients:
            key = (recipient.email or "").strip().lower()
            if not key or key in seen:
                continue
            seen.add(key)
            unique.append(recipient)
        return unique

    async def _resolve_one(self, resolver: RecipientResolverType, mapping: NotificationMapping, event) -> List[Recipient]:
        company_id = event.company_id
        snapshot = event.entity_snapshot
        location_id = snapshot.location_id

        if resolver in (RecipientResolverType.REQUESTOR, RecipientResolverType.ENTITY_OWNER):
            if snapshot.created_by:
                user = await self.directory.get_user(company_id, snapshot.created_by)
                if user:
                    return [user]
            if snapshot.created_by_email:
                return [Recipient(email=snapshot.created_by_email, name=snapshot.created_by_name,
                                  role=Role.EMPLOYEE.value, user_id=snapshot.created_by)]
            return []

        if resolver == RecipientResolverType.ACTION_PERFORMER:
            performer = event.triggered_by
            if performer.user_email:
                return [Recipient(email=performer.user_email, name=performer.user_name,
                                  role=performer.user_role, user_id=performer.user_id)]
            user = await self.directory.get_user(company_id, performer.user_id)
            return [user] if user else []

        if resolver == RecipientResolverType.CURRENT_STAGE_ROLE:
            return await self._role_holders(company_id, _stage_roles(event.current_stage), location_id)
        if resolver == RecipientResolverType.PREVIOUS_STAGE_ROLE:
            return await self._role_holders(company_id, _stage_roles(event.previous_stage), location_id)
        if resolver == RecipientResolverType.NEXT_STAGE_ROLE:
            config = await self.config_provider.get(company_id) if self.config_provider else None
            return await self._role_holders(
                company_id, _stage_roles(_following_stage(event.current_stage, config)), location_id
            )

        if resolver == RecipientResolverType.COMPANY_ADMIN:
            return await self.directory.users_with_roles(company_id, [Role.COMPANY_ADMIN.value])
        if resolver == RecipientResolverType.LOCATION_ADMIN:
            return await self.directory.users_with_roles(company_id, [Role.LOCATION_ADMIN.value], location_id)
        if resolver == RecipientResolverType.FINANCE_ADMIN:
            return await self.directory.users_with_roles(company_id, [Role.FINANCE_ADMIN.value])

        if resolver == RecipientResolverType.VENDOR:
            if not snapshot.vendor_id:
                return []
            return await self.directory.vendor_contacts(snapshot.vendor_id)

        if resolver == RecipientResolverType.CUSTOM:
            return [Recipient(email=c.email, name=c.name, role=c.role) for c in mapping.custom_recipients]

        raise ValueError(f"Unsupported resolver {resolver}")

    async def _role_holders(self, company_id: str, roles: List[str], location_id: Optional[str]) -> List[Recipient]:
        if not roles:
            return []
        return await self.directory.users_with_roles(company_id, roles, location_id)
