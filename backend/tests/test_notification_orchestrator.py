"""
Tests for notification mapping selection, recipient resolution and the
orchestrator that ties them to the event bus.
"""
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock

from services.email_service import EmailService, render_template
from services.notifications import (
    ChannelConfig,
    CustomRecipient,
    InMemoryNotificationMappingStore,
    MappingConditions,
    MongoNotificationMappingStore,
    NotificationDispatch,
    NotificationMapping,
    NotificationOrchestrator,
    NotificationSender,
    Recipient,
    RecipientResolver,
    SendResult,
    select_mappings,
)
from services.notifications.recipients import UserDirectory
from services.workflow_config import CompanyWorkflowConfig, InMemoryCompanyConfigProvider
from services.workflow_engine import PRWorkflowEngine
from services.workflow_events import EntitySnapshot, TriggeredBy, WorkflowEvent


def make_event(event_type="ENTITY_SUBMITTED", stage="SITE_ADMIN_APPROVAL", company_id="1001",
               amount=1500.0, actor=None, **overrides):
    values = dict(
        event_type=event_type,
        company_id=company_id,
        entity_type="PR",
        entity_id="ord-1",
        current_stage=stage,
        current_status="PENDING_SITE_ADMIN_APPROVAL",
        triggered_by=actor or TriggeredBy(
            user_id="u-emp", user_name="Eve Employee", user_role="EMPLOYEE", user_email="eve@acme.test"
        ),
        entity_snapshot=EntitySnapshot(
            display_id="PR-001",
            created_by="u-emp",
            created_by_email="eve@acme.test",
            created_by_name="Eve Employee",
            total_amount=amount,
            item_count=2,
            vendor_id="2001",
            location_id="3001",
        ),
    )
    values.update(overrides)
    return WorkflowEvent(**values)


def make_mapping(resolvers, company_id="*", event_type="ENTITY_SUBMITTED", stage_key=None,
                 template_key="PR_SUBMITTED", **kwargs):
    return NotificationMapping(
        company_id=company_id,
        entity_type="PR",
        event_type=event_type,
        stage_key=stage_key,
        recipient_resolvers=resolvers,
        channels=[ChannelConfig(channel="EMAIL", template_key=template_key)],
        **kwargs
    )


class RecordingSender(NotificationSender):
    """Sender double: optional failures before success."""

    def __init__(self, fail_times=0, result=None):
        self.fail_times = fail_times
        self.result = result
        self.calls = []

    async def send(self, dispatch: NotificationDispatch) -> SendResult:
        self.calls.append(dispatch)
        if len(self.calls) <= self.fail_times:
            raise ConnectionError("smtp unavailable")
        return self.result or SendResult(success=True, message_id=f"msg-{len(self.calls)}")


def emails(recipients):
    return sorted(r.email for r in recipients)


# =============================================================================
# MAPPINGS
# =============================================================================

class TestMappingSelection:
    """Scope matching, company override and ordering."""

    def test_company_mapping_shadows_wildcard(self):
        wildcard = make_mapping(["REQUESTOR"], company_id="*")
        company = make_mapping(["COMPANY_ADMIN"], company_id="1001")
        assert select_mappings([wildcard, company], make_event()) == [company]

    def test_wildcard_applies_to_other_companies(self):
        wildcard = make_mapping(["REQUESTOR"], company_id="*")
        company = make_mapping(["COMPANY_ADMIN"], company_id="1001")
        assert select_mappings([wildcard, company], make_event(company_id="1002")) == [wildcard]

    def test_shadowing_is_per_stage_key(self):
        """A company mapping for one stage does not hide wildcard mappings for others."""
        wildcard_any = make_mapping(["REQUESTOR"], company_id="*")
        company_site = make_mapping(["COMPANY_ADMIN"], company_id="1001", stage_key="SITE_ADMIN_APPROVAL")
        selected = select_mappings([wildcard_any, company_site], make_event())
        assert set(m.id for m in selected) == {wildcard_any.id, company_site.id}

    def test_stage_key_must_match(self):
        mapping = make_mapping(["REQUESTOR"], stage_key="COMPANY_ADMIN_APPROVAL")
        assert select_mappings([mapping], make_event(stage="SITE_ADMIN_APPROVAL")) == []

    def test_inactive_and_other_events_ignored(self):
        inactive = make_mapping(["REQUESTOR"], is_active=False)
        other = make_mapping(["REQUESTOR"], event_type="ENTITY_REJECTED")
        assert select_mappings([inactive, other], make_event()) == []

    def test_sorted_by_priority(self):
        low = make_mapping(["REQUESTOR"], priority=1)
        high = make_mapping(["COMPANY_ADMIN"], priority=10, stage_key="SITE_ADMIN_APPROVAL")
        assert select_mappings([low, high], make_event()) == [high, low]

    def test_conditions(self):
        conditions = MappingConditions(min_amount=10000)
        assert conditions.evaluate(make_event(amount=1500.0)) is not None
        assert conditions.evaluate(make_event(amount=25000.0)) is None
        assert MappingConditions(roles=["EMPLOYEE"]).evaluate(make_event()) is None
        assert MappingConditions(entity_statuses=["REJECTED"]).evaluate(make_event()) is not None

    def test_mapping_requires_resolvers_and_channels(self):
        with pytest.raises(ValueError):
            make_mapping([])
        with pytest.raises(ValueError):
            NotificationMapping(
                company_id="*", entity_type="PR", event_type="ENTITY_SUBMITTED",
                recipient_resolvers=["REQUESTOR"], channels=[],
            )

    def test_document_round_trip_keeps_enums_as_strings(self):
        mapping = make_mapping(["REQUESTOR", "VENDOR"], conditions=MappingConditions(min_amount=500))
        doc = mapping.to_dict()
        assert doc["recipient_resolvers"] == ["REQUESTOR", "VENDOR"]
        assert doc["channels"][0]["channel"] == "EMAIL"
        restored = NotificationMapping.from_document(doc)
        assert restored.conditions.min_amount == 500
        assert restored.id == mapping.id


# =============================================================================
# RECIPIENTS
# =============================================================================

@pytest.mark.asyncio
class TestRecipientResolver:

    async def test_current_stage_role_is_location_scoped(self, directory):
        resolver = RecipientResolver(directory)
        recipients, errors = await resolver.resolve(make_mapping(["CURRENT_STAGE_ROLE"]), make_event())
        assert emails(recipients) == ["sam@acme.test"]
        assert errors == []

    async def test_next_stage_role(self, directory):
        resolver = RecipientResolver(directory)
        recipients, _ = await resolver.resolve(make_mapping(["NEXT_STAGE_ROLE"]), make_event())
        assert emails(recipients) == ["cora@acme.test"]

    async def test_next_stage_role_follows_company_stages(self, directory, config_provider):
        resolver = RecipientResolver(directory, config_provider)
        recipients, _ = await resolver.resolve(make_mapping(["NEXT_STAGE_ROLE"]), make_event())
        assert emails(recipients) == ["cora@acme.test"]

    async def test_next_stage_role_empty_after_last_enabled_stage(self, directory):
        site_only = CompanyWorkflowConfig(
            company_id="1001",
            enable_pr_po_workflow=True,
            enable_site_admin_pr_approval=True,
            require_company_admin_po_approval=False,
        )
        resolver = RecipientResolver(directory, InMemoryCompanyConfigProvider([site_only]))

        recipients, errors = await resolver.resolve(make_mapping(["NEXT_STAGE_ROLE"]), make_event())

        assert recipients == []
        assert errors == []

    async def test_previous_stage_role(self, directory):
        resolver = RecipientResolver(directory)
        event = make_event(stage="COMPANY_ADMIN_APPROVAL", previous_stage="SITE_ADMIN_APPROVAL")
        recipients, _ = await resolver.resolve(make_mapping(["PREVIOUS_STAGE_ROLE"]), event)
        assert emails(recipients) == ["sam@acme.test"]

    async def test_company_admin_never_crosses_tenants(self, directory):
        resolver = RecipientResolver(directory)
        recipients, _ = await resolver.resolve(make_mapping(["COMPANY_ADMIN"]), make_event())
        assert emails(recipients) == ["cora@acme.test"]

    async def test_requestor_vendor_and_finance(self, directory):
        resolver = RecipientResolver(directory)
        recipients, _ = await resolver.resolve(
            make_mapping(["REQUESTOR", "VENDOR", "FINANCE_ADMIN"]), make_event()
        )
        assert emails(recipients) == ["eve@acme.test", "finn@acme.test", "orders@uniform-supplies.test"]

    async def test_custom_recipients(self, directory):
        resolver = RecipientResolver(directory)
        mapping = make_mapping(["CUSTOM"], custom_recipients=[CustomRecipient(email="audit@acme.test", name="Audit")])
        recipients, _ = await resolver.resolve(mapping, make_event())
        assert recipients == [Recipient(email="audit@acme.test", name="Audit", role=None)]

    async def test_dedupes_by_email_case_insensitively(self, directory):
        resolver = RecipientResolver(directory)
        mapping = make_mapping(
            ["REQUESTOR", "ENTITY_OWNER", "CUSTOM"],
            custom_recipients=[CustomRecipient(email="EVE@acme.test")],
        )
        recipients, _ = await resolver.resolve(mapping, make_event())
        assert emails(recipients) == ["eve@acme.test"]

    async def test_exclude_action_performer(self, directory):
        resolver = RecipientResolver(directory)
        actor = TriggeredBy(user_id="u-site", user_name="Sam Site", user_role="SITE_ADMIN", user_email="sam@acme.test")
        mapping = make_mapping(["CURRENT_STAGE_ROLE", "REQUESTOR"], exclude_action_performer=True)
        recipients, _ = await resolver.resolve(mapping, make_event(actor=actor))
        assert emails(recipients) == ["eve@acme.test"]

    async def test_failing_resolver_is_recorded(self, directory):
        broken = MagicMock(spec=UserDirectory)
        broken.get_user = AsyncMock(side_effect=RuntimeError("directory offline"))
        broken.users_with_roles = AsyncMock(side_effect=RuntimeError("directory offline"))
        resolver = RecipientResolver(broken)
        mapping = make_mapping(["COMPANY_ADMIN", "CUSTOM"], custom_recipients=[CustomRecipient(email="audit@acme.test")])

        recipients, errors = await resolver.resolve(mapping, make_event())

        assert emails(recipients) == ["audit@acme.test"]
        assert errors == [{"resolver": "COMPANY_ADMIN", "error": "directory offline"}]


# =============================================================================
# ORCHESTRATOR
# =============================================================================

@pytest.mark.asyncio
class TestNotificationOrchestrator:

    def orchestrator(self, directory, mappings, sender, **kwargs):
        kwargs.setdefault("enabled", True)
        kwargs.setdefault("demo_mode", False)
        kwargs.setdefault("retry_delay", 0)
        return NotificationOrchestrator(InMemoryNotificationMappingStore(mappings), directory, sender, **kwargs)

    async def test_no_mapping_is_logged_not_raised(self, directory, caplog):
        sender = RecordingSender()
        orchestrator = self.orchestrator(directory, [], sender)

        with caplog.at_level(logging.INFO, logger="services.notifications.orchestrator"):
            result = await orchestrator.handle_event(make_event())

        assert result.mappings_matched == 0
        assert result.dispatched == 0
        assert sender.calls == []
        assert "No mapping found for company=1001 entity=PR event=ENTITY_SUBMITTED stage=SITE_ADMIN_APPROVAL" in caplog.text

    async def test_dispatch_per_recipient_and_channel(self, directory):
        sender = RecordingSender()
        mapping = make_mapping(["REQUESTOR", "CURRENT_STAGE_ROLE"])
        mapping.channels.append(ChannelConfig(channel="IN_APP", template_key="PR_SUBMITTED"))
        orchestrator = self.orchestrator(directory, [mapping], sender)

        result = await orchestrator.handle_event(make_event())

        assert result.recipients_resolved == 2
        assert result.dispatched == 4
        assert {(d.recipient.email, d.channel) for d in sender.calls} == {
            ("eve@acme.test", "EMAIL"), ("eve@acme.test", "IN_APP"),
            ("sam@acme.test", "EMAIL"), ("sam@acme.test", "IN_APP"),
        }
        assert sender.calls[0].context["displayId"] == "PR-001"
        assert sender.calls[0].mapping_id == mapping.id

    async def test_condition_skips_mapping(self, directory):
        sender = RecordingSender()
        mapping = make_mapping(["REQUESTOR"], conditions=MappingConditions(min_amount=10000))
        result = await self.orchestrator(directory, [mapping], sender).handle_event(make_event())
        assert result.skipped_mappings[0]["mapping_id"] == mapping.id
        assert sender.calls == []

    async def test_transient_failure_is_retried(self, directory):
        sender = RecordingSender(fail_times=2)
        orchestrator = self.orchestrator(directory, [make_mapping(["REQUESTOR"])], sender, max_attempts=3)

        result = await orchestrator.handle_event(make_event())

        assert len(sender.calls) == 3
        assert result.dispatched == 1
        assert result.failed == 0

    async def test_retries_are_bounded(self, directory):
        sender = RecordingSender(fail_times=10)
        orchestrator = self.orchestrator(directory, [make_mapping(["REQUESTOR"])], sender, max_attempts=3)

        result = await orchestrator.handle_event(make_event())

        assert len(sender.calls) == 3
        assert result.failed == 1

    async def test_permanent_failure_not_retried(self, directory):
        sender = RecordingSender(result=SendResult(success=False, error="mailbox rejected"))
        orchestrator = self.orchestrator(directory, [make_mapping(["REQUESTOR"])], sender, max_attempts=3)

        result = await orchestrator.handle_event(make_event())

        assert len(sender.calls) == 1
        assert result.failed == 1

    async def test_demo_mode_never_sends(self, directory, caplog):
        sender = RecordingSender()
        orchestrator = self.orchestrator(directory, [make_mapping(["REQUESTOR"])], sender, demo_mode=True)

        with caplog.at_level(logging.INFO, logger="services.notifications.orchestrator"):
            result = await orchestrator.handle_event(make_event())

        assert sender.calls == []
        assert result.dispatched == 1
        assert "[DEMO]" in caplog.text

    async def test_disabled(self, directory):
        sender = RecordingSender()
        orchestrator = self.orchestrator(directory, [make_mapping(["REQUESTOR"])], sender, enabled=False)
        result = await orchestrator.handle_event(make_event())
        assert result.mappings_matched == 0
        assert sender.calls == []

    async def test_store_failure_is_contained(self, directory):
        store = MagicMock()
        store.list_for_company = AsyncMock(side_effect=RuntimeError("mongo down"))
        orchestrator = NotificationOrchestrator(store, directory, RecordingSender(), enabled=True, demo_mode=False)

        result = await orchestrator.handle_event(make_event())

        assert result.errors == [{"stage": "processing", "error": "mongo down"}]


@pytest.mark.asyncio
class TestEngineToNotification:
    """Workflow transitions drive notifications through the bus, never the reverse."""

    async def test_submit_notifies_requestor_and_site_admin(self, repo, bus, directory, config, employee):
        sender = RecordingSender()
        mapping = make_mapping(["REQUESTOR", "CURRENT_STAGE_ROLE"], stage_key="SITE_ADMIN_APPROVAL")
        NotificationOrchestrator(
            InMemoryNotificationMappingStore([mapping]), directory, sender,
            enabled=True, demo_mode=False, retry_delay=0,
        ).register(bus)
        engine = PRWorkflowEngine(repo, bus)

        await engine.submit("ord-1", employee, config)
        await bus.drain()

        assert sorted(d.recipient.email for d in sender.calls) == ["eve@acme.test", "sam@acme.test"]

    async def test_broken_sender_does_not_affect_transition(self, repo, bus, directory, config, employee):
        sender = RecordingSender(fail_times=100)
        NotificationOrchestrator(
            InMemoryNotificationMappingStore([make_mapping(["REQUESTOR"])]), directory, sender,
            enabled=True, demo_mode=False, max_attempts=2, retry_delay=0,
        ).register(bus)
        engine = PRWorkflowEngine(repo, bus)

        updated = await engine.submit("ord-1", employee, config)
        await bus.drain()

        assert updated["unified_pr_status"] == "PENDING_SITE_ADMIN_APPROVAL"
        assert (await repo.find_by_id("PR", "ord-1"))["version"] == 1
        assert len(sender.calls) == 2


# =============================================================================
# EMAIL ADAPTER AND MONGO STORE
# =============================================================================

class TestRenderTemplate:

    def test_placeholders(self):
        assert render_template("PR {{displayId}} by {{ actorName }}{{missing}}", {
            "displayId": "PR-001", "actorName": "Sam"
        }) == "PR PR-001 by Sam"


@pytest.mark.asyncio
class TestEmailService:

    async def test_send_renders_and_logs(self):
        service = EmailService()
        dispatch = NotificationDispatch(
            recipient=Recipient(email="eve@acme.test", name="Eve"),
            channel="EMAIL",
            template_key="PR_REJECTED",
            context={"displayId": "PR-001", "actorName": "Sam", "reasonLabel": "Budget exceeded", "remarks": "Q4"},
            event_id="WFE-1",
        )

        result = await service.send(dispatch)

        assert result.success is True
        logs = await service.get_email_logs()
        assert logs[0]["to"] == ["eve@acme.test"]
        assert logs[0]["subject"] == "PR PR-001 rejected"
        assert "Budget exceeded" in logs[0]["html_body"]
        assert "Hello Eve" in logs[0]["html_body"]

    async def test_unknown_template_and_channel_fail_permanently(self):
        service = EmailService()
        recipient = Recipient(email="eve@acme.test")
        missing = await service.send(NotificationDispatch(recipient=recipient, channel="EMAIL", template_key="NOPE"))
        sms = await service.send(NotificationDispatch(recipient=recipient, channel="SMS", template_key="PR_SUBMITTED"))
        assert missing.success is False
        assert sms.success is False


@pytest.mark.asyncio
class TestMongoMappingStore:

    def store(self, docs):
        db = MagicMock()
        db.workflow_notification_mappings.find.return_value.to_list = AsyncMock(return_value=docs)
        db.workflow_notification_mappings.update_one = AsyncMock()
        return MongoNotificationMappingStore(db, ttl_seconds=60), db

    async def test_reads_are_cached_until_a_write(self):
        doc = make_mapping(["REQUESTOR"], company_id="1001").to_dict()
        store, db = self.store([doc])

        first = await store.list_for_company("1001")
        await store.list_for_company("1001")
        assert db.workflow_notification_mappings.find.call_count == 1
        assert first[0].id == doc["id"]

        await store.save(first[0])
        await store.list_for_company("1001")
        assert db.workflow_notification_mappings.find.call_count == 2

    async def test_malformed_documents_are_skipped(self):
        good = make_mapping(["REQUESTOR"]).to_dict()
        bad = dict(good, id="WNM-bad", recipient_resolvers=[])
        store, _ = self.store([good, bad])

        mappings = await store.list_for_company("1001")

        assert [m.id for m in mappings] == [good["id"]]
