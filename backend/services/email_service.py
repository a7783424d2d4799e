"""
Procurement Workflow Hub - Email Service

Email delivery adapter for workflow notifications. Renders the template named
by a dispatch and hands the message to a provider.

Current implementation: Mock provider that logs emails and stores them in the
email_logs collection. Real transports plug in as further providers.
"""

import os
import re
import uuid
import logging
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from enum import Enum
from dataclasses import dataclass, asdict

from services.notifications.dispatch import NotificationDispatch, NotificationSender, SendResult
from services.notifications.mappings import NotificationChannel

logger = logging.getLogger(__name__)


class EmailProvider(str, Enum):
    """Supported email providers."""
    MOCK = "mock"


@dataclass
class EmailMessage:
    """Email message structure."""
    to: List[str]
    subject: str
    html_body: str
    text_body: Optional[str] = None
    from_address: str = "noreply@procurement-hub.local"
    template_key: Optional[str] = None
    event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# CONFIGURATION
# =============================================================================

CURRENT_EMAIL_PROVIDER = EmailProvider(
    os.environ.get("EMAIL_PROVIDER", "mock").lower()
)

DEFAULT_FROM_ADDRESS = os.environ.get(
    "EMAIL_FROM_ADDRESS",
    "Procurement Workflow Hub <noreply@procurement-hub.local>"
)


# =============================================================================
# TEMPLATES
# =============================================================================

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")

# Fallback templates; company templates in notification_templates take precedence
DEFAULT_TEMPLATES: Dict[str, Dict[str, str]] = {
    "PR_SUBMITTED": {
        "subject": "PR {{displayId}} submitted for approval",
        "body": "Hello {{recipientName}},<br>PR {{displayId}} from {{createdByName}} is waiting at {{currentStage}}.",
    },
    "PR_APPROVED_AT_STAGE": {
        "subject": "PR {{displayId}} moved to {{currentStage}}",
        "body": "Hello {{recipientName}},<br>{{actorName}} approved PR {{displayId}}. It now waits at {{currentStage}}.",
    },
    "PR_APPROVED": {
        "subject": "PR {{displayId}} approved",
        "body": "Hello {{recipientName}},<br>PR {{displayId}} has been fully approved by {{actorName}}.",
    },
    "PR_REJECTED": {
        "subject": "PR {{displayId}} rejected",
        "body": (
            "Hello {{recipientName}},<br>{{actorName}} rejected PR {{displayId}}: "
            "{{reasonLabel}}. {{remarks}}"
        ),
    },
    "PR_CANCELLED": {
        "subject": "PR {{displayId}} cancelled",
        "body": "Hello {{recipientName}},<br>PR {{displayId}} was cancelled by {{actorName}}.",
    },
}


def render_template(template: str, context: Dict[str, Any]) -> str:
    """Replace {{placeholder}} markers; unknown placeholders render empty."""
    def _replace(match):
        value = context.get(match.group(1))
        return "" if value is None else str(value)
    return PLACEHOLDER_PATTERN.sub(_replace, template)


# =============================================================================
# MOCK EMAIL PROVIDER
# =============================================================================

class MockEmailProvider:
    """
    Mock email provider for development and testing.

    Stores emails in MongoDB collection 'email_logs' for verification.
    Also logs for immediate visibility.
    """

    def __init__(self, db=None):
        self.db = db
        self._sent_emails = []

    async def send(self, message: EmailMessage) -> SendResult:
        message_id = f"mock_{uuid.uuid4().hex[:12]}"
        timestamp = datetime.now(timezone.utc).isoformat()

        email_record = {
            "message_id": message_id,
            "provider": EmailProvider.MOCK.value,
            "to": message.to,
            "subject": message.subject,
            "from_address": message.from_address,
            "html_body": message.html_body,
            "template_key": message.template_key,
            "event_id": message.event_id,
            "sent_at": timestamp,
            "status": "sent",
        }

        logger.info("[MOCK EMAIL] To: %s | Subject: %s | ID: %s", ", ".join(message.to), message.subject, message_id)
        self._sent_emails.append(email_record)

        if self.db is not None:
            await self.db.email_logs.insert_one(dict(email_record))

        return SendResult(success=True, message_id=message_id, timestamp=timestamp)

    def get_sent_emails(self) -> List[Dict[str, Any]]:
        return self._sent_emails.copy()


# =============================================================================
# EMAIL SERVICE (NotificationSender)
# =============================================================================

class EmailService(NotificationSender):
    """
    Email adapter for the notification orchestrator.

    Usage:
        service = EmailService(db=database)
        result = await service.send(dispatch)
    """

    def __init__(self, db=None, provider: EmailProvider = None, templates: Optional[Dict[str, Dict[str, str]]] = None):
        self.db = db
        self.provider_type = provider or CURRENT_EMAIL_PROVIDER
        self.templates = templates if templates is not None else DEFAULT_TEMPLATES
        self._provider = None

    def _get_provider(self):
        if self._provider is None:
            self._provider = MockEmailProvider(db=self.db)
        return self._provider

    async def _load_template(self, template_key: str, company_id: Optional[str]) -> Optional[Dict[str, str]]:
        if self.db is not None:
            doc = await self.db.notification_templates.find_one(
                {"template_key": template_key, "company_id": {"$in": [company_id, "*"]}},
                {"_id": 0},
                sort=[("company_id", -1)]
            )
            if doc:
                return doc
        return self.templates.get(template_key)

    async def send(self, dispatch: NotificationDispatch) -> SendResult:
        if dispatch.channel != NotificationChannel.EMAIL.value:
            return SendResult(success=False, error=f"channel {dispatch.channel} not handled by email service")

        template = await self._load_template(dispatch.template_key, dispatch.context.get("companyId"))
        if template is None:
            return SendResult(success=False, error=f"template {dispatch.template_key} not found")

        context = dict(dispatch.context)
        context.setdefault("recipientName", dispatch.recipient.name or dispatch.recipient.email)
        message = EmailMessage(
            to=[dispatch.recipient.email],
            subject=render_template(template["subject"], context),
            html_body=render_template(template["body"], context),
            from_address=DEFAULT_FROM_ADDRESS,
            template_key=dispatch.template_key,
            event_id=dispatch.event_id,
        )
        return await self._get_provider().send(message)

    async def get_email_logs(self, limit: int = 50, skip: int = 0) -> List[Dict[str, Any]]:
        if self.db is None:
            return self._get_provider().get_sent_emails()[skip:skip + limit]
        cursor = self.db.email_logs.find({}, {"_id": 0}).sort("sent_at", -1).skip(skip).limit(limit)
        return await cursor.to_list(limit)
