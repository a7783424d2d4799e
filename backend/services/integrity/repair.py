"""
Procurement Workflow Hub - Cascade Repair Job

Plans and (optionally) applies repairs for the findings of the integrity
checker. The job runs in two modes:
- DRY_RUN: plan and log every action with before/after values, write nothing
- LIVE: apply the same plan; requires an explicit operator confirmation

Plan order (parents first, so one LIVE run reaches a fixed point):
1. recompute unified statuses from legacy statuses
2. PRs claiming delivery without a shipment: delete, only when the operator
   enabled delete_unbacked_deliveries; otherwise flag REQUIRES_CONFIRMATION
3. PRs with shipment flags but no shipment: reset to DRAFT, clear flags
4. orphaned shipments, POs, GRNs and invoices: delete, evaluated against
   the deletions planned in the steps above
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Any

from services.entity_repository import EntityRepository
from services.integrity.checker import IntegritySnapshot, RelationshipIndex, load_snapshot
from services.workflow_entities import Invoice, PurchaseRequisition
from services.workflow_errors import WorkflowError
from services.workflow_settings import CASCADE_DELETE_UNBACKED_DELIVERIES, CASCADE_SAMPLE_LIMIT
from services.workflow_status import (
    EntityKind,
    STATUS_FIELDS,
    LegacyPRStatus,
    UnifiedPRStatus,
    UNKNOWN,
    unified_status_for,
    is_terminal_delivery_claim,
    has_intermediate_shipment_claim,
)

logger = logging.getLogger(__name__)


class RepairMode(str, Enum):
    DRY_RUN = "DRY_RUN"
    LIVE = "LIVE"


class RepairActionType(str, Enum):
    RECOMPUTE_UNIFIED_STATUS = "RECOMPUTE_UNIFIED_STATUS"
    DELETE_UNBACKED_DELIVERY = "DELETE_UNBACKED_DELIVERY"
    RESET_TO_DRAFT = "RESET_TO_DRAFT"
    DELETE_ORPHAN = "DELETE_ORPHAN"


class RepairActionStatus(str, Enum):
    PLANNED = "PLANNED"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    REQUIRES_CONFIRMATION = "REQUIRES_CONFIRMATION"
    FLAGGED = "FLAGGED"


class LiveRepairNotConfirmedError(Exception):
    """LIVE mode requested without the operator confirmation flag."""

    def __init__(self, message: str = "LIVE repair requires explicit operator confirmation"):
        self.message = message
        super().__init__(self.message)


@dataclass
class RepairAction:
    action: RepairActionType
    entity_type: str
    entity_id: str
    reason: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    unset: List[str] = field(default_factory=list)
    expected_version: Optional[int] = None
    status: RepairActionStatus = RepairActionStatus.PLANNED
    error: Optional[str] = None

    @property
    def is_change(self) -> bool:
        return self.status in (RepairActionStatus.PLANNED, RepairActionStatus.APPLIED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "reason": self.reason,
            "before": self.before,
            "after": self.after,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class RepairResult:
    mode: str
    started_at: str
    completed_at: str
    duration_seconds: float
    actions: List[RepairAction]
    sample_limit: int = CASCADE_SAMPLE_LIMIT

    @property
    def total_changes(self) -> int:
        """Applied changes in LIVE mode, planned changes in DRY_RUN."""
        return sum(1 for a in self.actions if a.is_change)

    def summary(self) -> Dict[str, Any]:
        by_action: Dict[str, int] = {}
        by_status: Dict[str, int] = {}
        for a in self.actions:
            by_action[a.action.value] = by_action.get(a.action.value, 0) + 1
            by_status[a.status.value] = by_status.get(a.status.value, 0) + 1
        return {
            "totalChanges": self.total_changes,
            "byAction": by_action,
            "byStatus": by_status,
            "requiresConfirmation": by_status.get(RepairActionStatus.REQUIRES_CONFIRMATION.value, 0),
            "failed": by_status.get(RepairActionStatus.FAILED.value, 0),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "durationSeconds": self.duration_seconds,
            "summary": self.summary(),
            "actions": [a.to_dict() for a in self.actions[:self.sample_limit * 5]],
        }


class CascadeRepairJob:
    """
    Usage:
        job = CascadeRepairJob(repository)
        plan = await job.run()                                       # dry run
        result = await job.run(RepairMode.LIVE, confirm_live=True)   # apply
    """

    def __init__(
        self,
        repository: EntityRepository,
        delete_unbacked_deliveries: bool = CASCADE_DELETE_UNBACKED_DELIVERIES,
        delete_orphans: bool = True,
        sample_limit: int = CASCADE_SAMPLE_LIMIT
    ):
        self.repository = repository
        self.delete_unbacked_deliveries = delete_unbacked_deliveries
        self.delete_orphans = delete_orphans
        self.sample_limit = sample_limit

    async def run(self, mode: RepairMode = RepairMode.DRY_RUN, confirm_live: bool = False) -> RepairResult:
        mode = RepairMode(mode)
        if mode == RepairMode.LIVE and not confirm_live:
            raise LiveRepairNotConfirmedError()

        started = datetime.now(timezone.utc)
        logger.info(
            "Starting cascade repair in %s mode (delete_unbacked_deliveries=%s, delete_orphans=%s)",
            mode.value, self.delete_unbacked_deliveries, self.delete_orphans
        )

        snapshot = await load_snapshot(self.repository)
        actions = self.plan(snapshot)

        for action in actions:
            logger.info(
                "[%s] %s %s %s (%s): before=%s after=%s status=%s",
                mode.value, action.action.value, action.entity_type, action.entity_id,
                action.reason, action.before, action.after, action.status.value
            )
            if mode == RepairMode.LIVE and action.status == RepairActionStatus.PLANNED:
                await self._apply(action)

        completed = datetime.now(timezone.utc)
        result = RepairResult(
            mode=mode.value,
            started_at=started.isoformat(),
            completed_at=completed.isoformat(),
            duration_seconds=(completed - started).total_seconds(),
            actions=actions,
            sample_limit=self.sample_limit,
        )
        logger.info("Cascade repair finished in %s mode: %s", mode.value, result.summary())
        return result

    # ----- planning -----

    def plan(self, snapshot: IntegritySnapshot) -> List[RepairAction]:
        deleted: Dict[EntityKind, set] = {kind: set() for kind in EntityKind}
        reset: set = set()
        delivery_actions: List[RepairAction] = []
        reset_actions: List[RepairAction] = []

        index = RelationshipIndex(snapshot)
        for doc in snapshot.purchase_requisitions:
            if index.shipments_for(PurchaseRequisition.from_document(doc)):
                continue
            before = {k: doc.get(k) for k in ("pr_status", "unified_pr_status", "dispatchStatus", "deliveryStatus")}

            if is_terminal_delivery_claim(doc):
                action = RepairAction(
                    RepairActionType.DELETE_UNBACKED_DELIVERY, EntityKind.PR.value, doc["id"],
                    reason="PR claims delivery but no shipment exists",
                    before=before,
                    expected_version=doc.get("version"),
                )
                if self.delete_unbacked_deliveries:
                    deleted[EntityKind.PR].add(doc["id"])
                else:
                    action.status = RepairActionStatus.REQUIRES_CONFIRMATION
                delivery_actions.append(action)
            elif has_intermediate_shipment_claim(doc):
                reset.add(doc["id"])
                reset_actions.append(RepairAction(
                    RepairActionType.RESET_TO_DRAFT, EntityKind.PR.value, doc["id"],
                    reason="PR carries shipment flags but no shipment exists",
                    before=before,
                    after={
                        "pr_status": LegacyPRStatus.DRAFT.value,
                        "unified_pr_status": UnifiedPRStatus.DRAFT.value,
                    },
                    unset=["dispatchStatus", "deliveryStatus"],
                    expected_version=doc.get("version"),
                ))

        orphan_actions = self._plan_orphans(snapshot, deleted)

        recompute_actions = []
        for kind, doc in snapshot.documents():
            if doc.get("id") in deleted[kind] or (kind == EntityKind.PR and doc.get("id") in reset):
                continue
            action = self._plan_recompute(kind, doc)
            if action:
                recompute_actions.append(action)

        return recompute_actions + delivery_actions + reset_actions + orphan_actions

    @staticmethod
    def _plan_recompute(kind: EntityKind, doc: Dict[str, Any]) -> Optional[RepairAction]:
        fields = STATUS_FIELDS[kind]
        legacy = doc.get(fields["legacy"])
        approval = doc.get(fields["approval"]) if "approval" in fields else None
        stored = doc.get(fields["unified"])
        expected = unified_status_for(kind, legacy, approval)

        if expected is UNKNOWN:
            return RepairAction(
                RepairActionType.RECOMPUTE_UNIFIED_STATUS, kind.value, doc.get("id"),
                reason=f"unknown legacy status '{legacy}'; left untouched",
                before={fields["unified"]: stored, fields["legacy"]: legacy},
                status=RepairActionStatus.FLAGGED,
            )
        if stored == expected.value:
            return None
        return RepairAction(
            RepairActionType.RECOMPUTE_UNIFIED_STATUS, kind.value, doc.get("id"),
            reason="unified status disagrees with legacy status",
            before={fields["unified"]: stored, fields["legacy"]: legacy},
            after={fields["unified"]: expected.value},
            expected_version=doc.get("version"),
        )

    def _plan_orphans(self, snapshot: IntegritySnapshot, deleted: Dict[EntityKind, set]) -> List[RepairAction]:
        actions = []
        status = RepairActionStatus.PLANNED if self.delete_orphans else RepairActionStatus.FLAGGED

        def orphan(kind: EntityKind, entity_id: str, reason: str, before: Dict[str, Any]):
            actions.append(RepairAction(
                RepairActionType.DELETE_ORPHAN, kind.value, entity_id,
                reason=reason, before=before, status=status,
            ))
            if self.delete_orphans:
                deleted[kind].add(entity_id)

        # Each level is evaluated after its parents' deletions are known
        index = RelationshipIndex(snapshot, deleted)
        for shipment in index.shipments:
            if index.shipment_is_orphan(shipment):
                orphan(EntityKind.SHIPMENT, shipment.id, "shipment references no existing PR",
                       {"shipmentId": shipment.shipment_id, "prNumber": shipment.pr_number})
        for po in index.pos:
            if index.po_is_orphan(po):
                orphan(EntityKind.PO, po.id, "PO is not referenced by any PR",
                       {"poNumber": po.po_number, "prNumbers": po.pr_numbers})

        index = RelationshipIndex(snapshot, deleted)
        for grn in index.grns:
            if index.grn_is_orphan(grn):
                orphan(EntityKind.GRN, grn.id, "GRN references no existing PO",
                       {"grnNumber": grn.grn_number, "poNumber": grn.po_number})

        index = RelationshipIndex(snapshot, deleted)
        for doc in snapshot.invoices:
            invoice = Invoice.from_document(doc)
            if index.invoice_is_orphan(invoice):
                orphan(EntityKind.INVOICE, invoice.id, "invoice references no existing GRN",
                       {"invoiceNumber": invoice.invoice_number, "grnNumber": invoice.grn_number})
        return actions

    # ----- applying -----

    async def _apply(self, action: RepairAction):
        kind = EntityKind(action.entity_type)
        try:
            if action.action in (RepairActionType.DELETE_ORPHAN, RepairActionType.DELETE_UNBACKED_DELIVERY):
                await self.repository.delete(kind, action.entity_id)
            else:
                await self.repository.update(
                    kind, action.entity_id, action.after or {},
                    expected_version=action.expected_version,
                    unset=action.unset or None,
                )
            action.status = RepairActionStatus.APPLIED
        except WorkflowError as e:
            # Entity moved since the snapshot; the next run will re-evaluate it
            action.status = RepairActionStatus.FAILED
            action.error = e.message
            logger.warning("Repair %s on %s %s failed: %s", action.action.value, kind.value, action.entity_id, e.message)
