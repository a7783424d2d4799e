"""
Unit tests for the workflow event schema and the in-process event bus.
"""
import asyncio
import logging
import re

import pytest

from services.workflow_events import (
    EntitySnapshot,
    RejectionInfo,
    TriggeredBy,
    WorkflowEvent,
    WorkflowEventBus,
    WorkflowEventType,
    generate_event_id,
)


def make_event(event_type=WorkflowEventType.ENTITY_SUBMITTED.value, **overrides):
    values = dict(
        event_type=event_type,
        company_id="1001",
        entity_type="PR",
        entity_id="ord-1",
        current_stage="SITE_ADMIN_APPROVAL",
        current_status="PENDING_SITE_ADMIN_APPROVAL",
        triggered_by=TriggeredBy(user_id="u-emp", user_name="Eve Employee", user_role="EMPLOYEE"),
        entity_snapshot=EntitySnapshot(display_id="PR-001", total_amount=1500.0, item_count=2),
    )
    values.update(overrides)
    return WorkflowEvent(**values)


class TestEventSchema:
    """WorkflowEvent wire shape."""

    def test_event_id_format(self):
        assert re.match(r"^WFE-[0-9a-z]+-[0-9a-z]{7}$", generate_event_id())

    def test_event_ids_are_unique(self):
        assert len({generate_event_id() for _ in range(200)}) == 200

    def test_to_dict_is_camel_case(self):
        data = make_event().to_dict()
        assert data["eventType"] == "ENTITY_SUBMITTED"
        assert data["companyId"] == "1001"
        assert data["currentStage"] == "SITE_ADMIN_APPROVAL"
        assert data["triggeredBy"] == {"userId": "u-emp", "userName": "Eve Employee", "userRole": "EMPLOYEE"}
        assert data["entitySnapshot"]["displayId"] == "PR-001"
        assert data["eventTimestamp"]

    def test_optional_fields_omitted_when_absent(self):
        data = make_event().to_dict()
        assert "previousStage" not in data
        assert "previousStatus" not in data
        assert "rejection" not in data

    def test_rejection_block(self):
        event = make_event(
            event_type=WorkflowEventType.ENTITY_REJECTED.value,
            previous_stage="SITE_ADMIN_APPROVAL",
            previous_status="PENDING_SITE_ADMIN_APPROVAL",
            rejection=RejectionInfo("BUDGET_EXCEEDED", "Budget exceeded", "Q4 freeze"),
        )
        data = event.to_dict()
        assert data["previousStage"] == "SITE_ADMIN_APPROVAL"
        assert data["rejection"] == {
            "reasonCode": "BUDGET_EXCEEDED",
            "reasonLabel": "Budget exceeded",
            "remarks": "Q4 freeze",
        }

    def test_snapshot_from_document(self, pr_factory):
        snapshot = EntitySnapshot.from_document(pr_factory("ord-1", "PR-001"))
        assert snapshot.display_id == "PR-001"
        assert snapshot.total_amount == 1500.0
        assert snapshot.item_count == 2
        assert snapshot.vendor_id == "2001"
        assert snapshot.created_by_email == "eve@acme.test"
        assert snapshot.location_name == "Pune Plant"

    def test_snapshot_accepts_embedded_vendor(self):
        snapshot = EntitySnapshot.from_document({"id": "x", "vendorId": {"id": "2001", "name": "Uniform"}})
        assert snapshot.vendor_id == "2001"
        assert snapshot.display_id == "x"
        assert snapshot.item_count == 0


@pytest.mark.asyncio
class TestEventBus:
    """Subscription matching and fire-and-forget delivery."""

    async def test_exact_and_pattern_subscriptions(self):
        bus = WorkflowEventBus()
        exact, approved, everything = [], [], []

        async def on_exact(event):
            exact.append(event.event_type)

        async def on_approved(event):
            approved.append(event.event_type)

        async def on_all(event):
            everything.append(event.event_type)

        bus.subscribe("ENTITY_SUBMITTED", on_exact)
        bus.subscribe("ENTITY_APPROVED*", on_approved)
        bus.subscribe("*", on_all)

        bus.emit(make_event("ENTITY_SUBMITTED"))
        bus.emit(make_event("ENTITY_APPROVED_AT_STAGE"))
        bus.emit(make_event("ENTITY_APPROVED"))
        await bus.drain()

        assert exact == ["ENTITY_SUBMITTED"]
        assert sorted(approved) == ["ENTITY_APPROVED", "ENTITY_APPROVED_AT_STAGE"]
        assert len(everything) == 3

    async def test_emit_returns_handler_count(self):
        bus = WorkflowEventBus()

        async def noop(event):
            pass

        bus.subscribe("*", noop)
        bus.subscribe("ENTITY_*", noop)
        assert bus.emit(make_event()) == 2
        await bus.drain()

    async def test_no_subscribers_is_not_an_error(self, caplog):
        bus = WorkflowEventBus()
        with caplog.at_level(logging.INFO, logger="services.workflow_events"):
            assert bus.emit(make_event()) == 0
        assert "No subscribers" in caplog.text

    async def test_failing_handler_is_isolated(self, caplog):
        """One handler raising does not stop the others or reach the emitter."""
        bus = WorkflowEventBus()
        delivered = []

        async def broken(event):
            raise RuntimeError("smtp down")

        async def healthy(event):
            delivered.append(event.event_id)

        bus.subscribe("*", broken)
        bus.subscribe("*", healthy)

        event = make_event()
        with caplog.at_level(logging.ERROR, logger="services.workflow_events"):
            assert bus.emit(event) == 2
            await bus.drain()

        assert delivered == [event.event_id]
        assert "smtp down" in caplog.text

    async def test_unsubscribe(self):
        bus = WorkflowEventBus()
        seen = []

        async def handler(event):
            seen.append(event)

        unsubscribe = bus.subscribe("*", handler)
        unsubscribe()
        unsubscribe()

        assert bus.emit(make_event()) == 0
        await bus.drain()
        assert seen == []

    async def test_emit_does_not_wait_for_handlers(self):
        bus = WorkflowEventBus()
        release = asyncio.Event()
        finished = []

        async def slow(event):
            await release.wait()
            finished.append(event)

        bus.subscribe("*", slow)
        bus.emit(make_event())
        await asyncio.sleep(0)
        assert finished == []

        release.set()
        await bus.drain()
        assert len(finished) == 1

    async def test_emit_outside_event_loop_never_raises(self):
        """Emitting from a worker thread with no running loop is swallowed and logged."""
        bus = WorkflowEventBus()

        async def handler(event):
            pass

        bus.subscribe("*", handler)
        count = await asyncio.to_thread(bus.emit, make_event())
        assert count == 0
