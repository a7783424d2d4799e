"""
Procurement Workflow Hub - Workflow Notification Orchestrator

Event bus subscriber that turns a WorkflowEvent into notification dispatches:

1. load mappings for the company (+ wildcard) and select the ones that fire
2. evaluate each mapping's conditions
3. resolve, dedupe and filter recipients
4. hand every (recipient, channel) pair to the NotificationSender with
   bounded retry

Nothing here raises back into the bus, and nothing here writes workflow
entities.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Callable

from services.workflow_config import CompanyConfigProvider
from services.workflow_settings import (
    ENABLE_WORKFLOW_NOTIFICATIONS,
    DEMO_MODE,
    NOTIFICATION_MAX_ATTEMPTS,
    NOTIFICATION_RETRY_DELAY_SECONDS,
)
from services.notifications.dispatch import NotificationDispatch, NotificationSender
from services.notifications.mappings import NotificationMappingStore, NotificationMapping, select_mappings
from services.notifications.recipients import RecipientResolver, UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    """Outcome of processing one event."""
    event_id: str
    event_type: str
    mappings_matched: int = 0
    recipients_resolved: int = 0
    dispatched: int = 0
    failed: int = 0
    skipped_mappings: List[Dict[str, str]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "mappings_matched": self.mappings_matched,
            "recipients_resolved": self.recipients_resolved,
            "dispatched": self.dispatched,
            "failed": self.failed,
            "skipped_mappings": self.skipped_mappings,
            "errors": self.errors,
        }


def build_context(event) -> Dict[str, Any]:
    """Flat template context derived from an event."""
    snapshot = event.entity_snapshot
    context = {
        "eventId": event.event_id,
        "eventType": event.event_type,
        "eventTimestamp": event.event_timestamp,
        "companyId": event.company_id,
        "entityType": event.entity_type,
        "entityId": event.entity_id,
        "displayId": snapshot.display_id,
        "currentStage": event.current_stage,
        "currentStatus": event.current_status,
        "previousStage": event.previous_stage,
        "previousStatus": event.previous_status,
        "actorName": event.triggered_by.user_name or event.triggered_by.user_id,
        "actorRole": event.triggered_by.user_role,
        "createdByName": snapshot.created_by_name,
        "totalAmount": snapshot.total_amount,
        "itemCount": snapshot.item_count,
        "vendorName": snapshot.vendor_name,
        "locationName": snapshot.location_name,
    }
    if event.rejection is not None:
        context.update({
            "reasonCode": event.rejection.reason_code,
            "reasonLabel": event.rejection.reason_label,
            "remarks": event.rejection.remarks,
        })
    return context


class NotificationOrchestrator:
    """
    Usage:
        orchestrator = NotificationOrchestrator(store, directory, sender)
        unsubscribe = orchestrator.register(event_bus)
    """

    def __init__(
        self,
        mapping_store: NotificationMappingStore,
        directory: UserDirectory,
        sender: Optional[NotificationSender],
        config_provider: Optional[CompanyConfigProvider] = None,
        enabled: bool = ENABLE_WORKFLOW_NOTIFICATIONS,
        demo_mode: bool = DEMO_MODE,
        max_attempts: int = NOTIFICATION_MAX_ATTEMPTS,
        retry_delay: float = NOTIFICATION_RETRY_DELAY_SECONDS
    ):
        self.mapping_store = mapping_store
        self.resolver = RecipientResolver(directory, config_provider)
        self.sender = sender
        self.enabled = enabled
        self.demo_mode = demo_mode
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    def register(self, event_bus, pattern: str = "*") -> Callable[[], None]:
        return event_bus.subscribe(pattern, self.handle_event)

    async def handle_event(self, event) -> NotificationResult:
        result = NotificationResult(event_id=event.event_id, event_type=event.event_type)

        if not self.enabled:
            logger.debug("Workflow notifications disabled; ignoring %s", event.event_id)
            return result

        try:
            await self._process(event, result)
        except Exception as e:
            logger.error("Notification processing failed for %s (%s): %s", event.event_id, event.event_type, e)
            result.errors.append({"stage": "processing", "error": str(e)})

        logger.info(
            "Notifications for %s %s: mappings=%d recipients=%d dispatched=%d failed=%d",
            event.event_type, event.event_id, result.mappings_matched,
            result.recipients_resolved, result.dispatched, result.failed
        )
        return result

    async def _process(self, event, result: NotificationResult):
        mappings = await self.mapping_store.list_for_company(event.company_id)
        selected = select_mappings(mappings, event)
        if not selected:
            logger.info(
                "No mapping found for company=%s entity=%s event=%s stage=%s",
                event.company_id, event.entity_type, event.event_type, event.current_stage
            )
            return

        result.mappings_matched = len(selected)
        context = build_context(event)

        for mapping in selected:
            skip_reason = mapping.conditions.evaluate(event)
            if skip_reason:
                logger.debug("Mapping %s skipped: %s", mapping.id, skip_reason)
                result.skipped_mappings.append({"mapping_id": mapping.id, "reason": skip_reason})
                continue

            recipients, errors = await self.resolver.resolve(mapping, event)
            result.errors.extend({"mapping_id": mapping.id, **e} for e in errors)
            result.recipients_resolved += len(recipients)

            for recipient in recipients:
                for channel in mapping.channels:
                    dispatch = NotificationDispatch(
                        recipient=recipient,
                        channel=channel.channel.value,
                        template_key=channel.template_key,
                        context=context,
                        mapping_id=mapping.id,
                        event_id=event.event_id,
                    )
                    if await self._deliver(dispatch, mapping):
                        result.dispatched += 1
                    else:
                        result.failed += 1

    async def _deliver(self, dispatch: NotificationDispatch, mapping: NotificationMapping) -> bool:
        if self.demo_mode or self.sender is None:
            logger.info(
                "[DEMO] Would send %s via %s to %s (mapping %s)",
                dispatch.template_key, dispatch.channel, dispatch.recipient.email, mapping.id
            )
            return True

        for attempt in range(self.max_attempts):
            try:
                sent = await self.sender.send(dispatch)
                if sent.success:
                    return True
                # Permanent failure reported by the sender; retrying won't help
                logger.warning(
                    "Notification %s to %s not sent: %s",
                    dispatch.template_key, dispatch.recipient.email, sent.error
                )
                return False
            except Exception as e:
                logger.warning(
                    "Notification send attempt %d/%d to %s failed: %s",
                    attempt + 1, self.max_attempts, dispatch.recipient.email, e
                )
                if attempt + 1 < self.max_attempts:
                    await asyncio.sleep(self.retry_delay)

        logger.error(
            "Notification %s to %s failed after %d attempts",
            dispatch.template_key, dispatch.recipient.email, self.max_attempts
        )
        return False
