"""
Procurement Workflow Hub - Cascade Integrity Checker

Read-only audit of the cross-entity invariants:

- every record carries a unified status that is the image of its legacy one
- a PR delivery claim is backed by a shipment, and vice versa
- shipments, POs, GRNs and invoices all hang off an existing parent
- reference IDs follow the tenant's canonical ID scheme

The checker never writes. It works on a snapshot loaded once per run so
that all sections describe the same state.
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Any

from services.entity_repository import EntityRepository
from services.workflow_entities import (
    PurchaseRequisition,
    PurchaseOrder,
    Shipment,
    GoodsReceipt,
    Invoice,
)
from services.workflow_settings import CANONICAL_ID_PATTERN, CASCADE_SAMPLE_LIMIT
from services.workflow_status import (
    EntityKind,
    STATUS_FIELDS,
    check_consistency,
    is_terminal_delivery_claim,
    has_intermediate_shipment_claim,
    is_shipment_delivered,
    safe_default_for,
)

logger = logging.getLogger(__name__)


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class CheckName(str, Enum):
    UNIFIED_STATUS_COVERAGE = "unifiedStatusCoverage"
    STATUS_MISMATCHES = "statusMismatches"
    CASCADE_INCOMPLETE = "cascadeIncomplete"
    ORPHANED_SHIPMENTS = "orphanedShipments"
    ORPHANED_PURCHASE_ORDERS = "orphanedPurchaseOrders"
    ORPHANED_GRNS = "orphanedGrns"
    ORPHANED_INVOICES = "orphanedInvoices"
    UNBACKED_DELIVERY_CLAIMS = "unbackedDeliveryClaims"
    UNBACKED_SHIPMENT_CLAIMS = "unbackedShipmentClaims"
    REFERENCE_INTEGRITY = "referenceIntegrity"


# Severity when a section finds something
CHECK_SEVERITY: Dict[CheckName, CheckStatus] = {
    CheckName.UNIFIED_STATUS_COVERAGE: CheckStatus.WARN,
    CheckName.REFERENCE_INTEGRITY: CheckStatus.WARN,
}


@dataclass
class IntegrityViolation:
    """A single finding. Reported, never raised."""
    check: CheckName
    entity_type: str
    entity_id: str
    sample: Dict[str, Any]


@dataclass
class CheckSection:
    name: CheckName
    violations: List[IntegrityViolation] = field(default_factory=list)
    sample_limit: int = CASCADE_SAMPLE_LIMIT

    @property
    def count(self) -> int:
        return len(self.violations)

    @property
    def status(self) -> CheckStatus:
        if not self.violations:
            return CheckStatus.PASS
        return CHECK_SEVERITY.get(self.name, CheckStatus.FAIL)

    def add(self, entity_type: str, entity_id: str, sample: Dict[str, Any]):
        self.violations.append(IntegrityViolation(self.name, entity_type, entity_id, sample))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "samples": [v.sample for v in self.violations[:self.sample_limit]],
            "status": self.status.value,
        }


@dataclass
class IntegritySnapshot:
    """All workflow documents read in one pass."""
    orders: List[Dict[str, Any]]
    purchase_requisitions: List[Dict[str, Any]]
    purchase_orders: List[Dict[str, Any]]
    shipments: List[Dict[str, Any]]
    grns: List[Dict[str, Any]]
    invoices: List[Dict[str, Any]]

    def documents(self) -> List[tuple]:
        """(kind, document) pairs across every collection."""
        pairs = [(EntityKind.ORDER, d) for d in self.orders]
        pairs += [(EntityKind.PR, d) for d in self.purchase_requisitions]
        pairs += [(EntityKind.PO, d) for d in self.purchase_orders]
        pairs += [(EntityKind.SHIPMENT, d) for d in self.shipments]
        pairs += [(EntityKind.GRN, d) for d in self.grns]
        pairs += [(EntityKind.INVOICE, d) for d in self.invoices]
        return pairs


def is_pr_document(doc: Dict[str, Any]) -> bool:
    """Orders raised through the PR workflow carry a pr_status or pr_number."""
    return bool(doc.get("pr_status") or doc.get("pr_number") or doc.get("prNumber"))


async def load_snapshot(repository: EntityRepository) -> IntegritySnapshot:
    orders = await repository.find_by_reference(EntityKind.ORDER, {})
    return IntegritySnapshot(
        orders=[d for d in orders if not is_pr_document(d)],
        purchase_requisitions=[d for d in orders if is_pr_document(d)],
        purchase_orders=await repository.find_by_reference(EntityKind.PO, {}),
        shipments=await repository.find_by_reference(EntityKind.SHIPMENT, {}),
        grns=await repository.find_by_reference(EntityKind.GRN, {}),
        invoices=await repository.find_by_reference(EntityKind.INVOICE, {}),
    )


# =============================================================================
# RELATIONSHIP INDEX
# =============================================================================

class RelationshipIndex:
    """
    Parent lookups shared by the checker and the repair planner.

    `excluded` holds IDs planned for deletion; a child whose parent is
    excluded counts as orphaned.
    """

    def __init__(self, snapshot: IntegritySnapshot, excluded: Optional[Dict[EntityKind, set]] = None):
        excluded = excluded or {}
        self.excluded = excluded
        self.prs = [PurchaseRequisition.from_document(d) for d in snapshot.purchase_requisitions
                    if d.get("id") not in excluded.get(EntityKind.PR, set())]
        self.pos = [PurchaseOrder.from_document(d) for d in snapshot.purchase_orders
                    if d.get("id") not in excluded.get(EntityKind.PO, set())]
        self.shipments = [Shipment.from_document(d) for d in snapshot.shipments
                          if d.get("id") not in excluded.get(EntityKind.SHIPMENT, set())]
        self.grns = [GoodsReceipt.from_document(d) for d in snapshot.grns
                     if d.get("id") not in excluded.get(EntityKind.GRN, set())]

        self.pr_numbers = {p.pr_number for p in self.prs if p.pr_number}
        self.shipments_by_pr: Dict[str, List[Shipment]] = {}
        for shipment in self.shipments:
            self.shipments_by_pr.setdefault(shipment.pr_number, []).append(shipment)

        self.po_ids = {p.id for p in self.pos}
        self.po_numbers = {p.po_number for p in self.pos if p.po_number}
        self.grn_ids = {g.id for g in self.grns}
        self.grn_numbers = {g.grn_number for g in self.grns if g.grn_number}

        self.pos_linked_by_prs = set()
        for pr in self.prs:
            if pr.po_id:
                self.pos_linked_by_prs.add(pr.po_id)
            if pr.po_number:
                self.pos_linked_by_prs.add(pr.po_number)

    def shipments_for(self, pr: PurchaseRequisition) -> List[Shipment]:
        if not pr.pr_number:
            return []
        return self.shipments_by_pr.get(pr.pr_number, [])

    def shipment_is_orphan(self, shipment: Shipment) -> bool:
        return not shipment.pr_number or shipment.pr_number not in self.pr_numbers

    def po_is_orphan(self, po: PurchaseOrder) -> bool:
        if po.id in self.pos_linked_by_prs or (po.po_number and po.po_number in self.pos_linked_by_prs):
            return False
        return not any(n in self.pr_numbers for n in po.pr_numbers)

    def grn_is_orphan(self, grn: GoodsReceipt) -> bool:
        if grn.po_id and grn.po_id in self.po_ids:
            return False
        return not (grn.po_number and (grn.po_number in self.po_numbers or grn.po_number in self.po_ids))

    def invoice_is_orphan(self, invoice: Invoice) -> bool:
        if invoice.grn_id and invoice.grn_id in self.grn_ids:
            return False
        return not (invoice.grn_number and invoice.grn_number in self.grn_numbers)


# =============================================================================
# CHECKER
# =============================================================================

class CascadeIntegrityChecker:
    """
    Usage:
        checker = CascadeIntegrityChecker(repository)
        report = await checker.run()
        report.to_dict()["orphanedShipments"]["count"]
    """

    def __init__(
        self,
        repository: EntityRepository,
        canonical_id_pattern: str = CANONICAL_ID_PATTERN,
        sample_limit: int = CASCADE_SAMPLE_LIMIT
    ):
        self.repository = repository
        self.canonical_id = re.compile(canonical_id_pattern)
        self.sample_limit = sample_limit

    async def run(self, snapshot: Optional[IntegritySnapshot] = None) -> "IntegrityReport":
        snapshot = snapshot or await load_snapshot(self.repository)
        index = RelationshipIndex(snapshot)
        sections = {name: CheckSection(name, sample_limit=self.sample_limit) for name in CheckName}

        self._check_statuses(snapshot, sections)
        self._check_cascade(index, sections)
        self._check_orphans(snapshot, index, sections)
        self._check_references(snapshot, sections[CheckName.REFERENCE_INTEGRITY])

        report = IntegrityReport(sections=sections)
        for name, section in sections.items():
            if section.count:
                logger.info("Integrity check %s: %d finding(s) [%s]", name.value, section.count, section.status.value)
        return report

    @staticmethod
    def _check_statuses(snapshot: IntegritySnapshot, sections: Dict[CheckName, CheckSection]):
        coverage = sections[CheckName.UNIFIED_STATUS_COVERAGE]
        mismatches = sections[CheckName.STATUS_MISMATCHES]

        for kind, doc in snapshot.documents():
            fields = STATUS_FIELDS[kind]
            if not doc.get(fields["unified"]):
                coverage.add(kind.value, doc.get("id"), {
                    "entityType": kind.value,
                    "id": doc.get("id"),
                    "legacyStatus": doc.get(fields["legacy"]),
                })
                continue

            mismatch = check_consistency(kind, doc)
            if mismatch:
                sample = {
                    "entityType": kind.value,
                    "id": doc.get("id"),
                    "legacyStatus": mismatch["legacy_status"],
                    "storedUnifiedStatus": mismatch["stored_unified_status"],
                    "expectedUnifiedStatus": mismatch["expected_unified_status"],
                    "knownLegacyStatus": mismatch["known"],
                }
                if not mismatch["known"]:
                    sample["safeDefaultStatus"] = safe_default_for(kind).value
                mismatches.add(kind.value, doc.get("id"), sample)

    @staticmethod
    def _check_cascade(index: RelationshipIndex, sections: Dict[CheckName, CheckSection]):
        incomplete = sections[CheckName.CASCADE_INCOMPLETE]
        unbacked_delivery = sections[CheckName.UNBACKED_DELIVERY_CLAIMS]
        unbacked_shipment = sections[CheckName.UNBACKED_SHIPMENT_CLAIMS]

        for pr in index.prs:
            raw = {"pr_status": pr.pr_status, "unified_pr_status": pr.unified_pr_status,
                   "dispatchStatus": pr.dispatch_status, "deliveryStatus": pr.delivery_status}
            shipments = index.shipments_for(pr)
            claims_delivery = is_terminal_delivery_claim(raw)
            sample = {
                "id": pr.id,
                "prNumber": pr.pr_number,
                "prStatus": pr.pr_status,
                "dispatchStatus": pr.dispatch_status,
                "deliveryStatus": pr.delivery_status,
            }

            if not shipments:
                if claims_delivery:
                    unbacked_delivery.add(EntityKind.PR.value, pr.id, sample)
                elif has_intermediate_shipment_claim(raw):
                    unbacked_shipment.add(EntityKind.PR.value, pr.id, sample)
                continue

            delivered = [s for s in shipments if is_shipment_delivered(
                {"shipmentStatus": s.shipment_status, "unified_shipment_status": s.unified_shipment_status}
            )]
            if claims_delivery and not delivered:
                incomplete.add(EntityKind.PR.value, pr.id, {**sample, "issue": "PR_DELIVERED_SHIPMENT_NOT_DELIVERED",
                                                           "shipmentIds": [s.shipment_id for s in shipments]})
            elif delivered and not claims_delivery:
                incomplete.add(EntityKind.PR.value, pr.id, {**sample, "issue": "SHIPMENT_DELIVERED_PR_NOT_DELIVERED",
                                                           "shipmentIds": [s.shipment_id for s in delivered]})

    @staticmethod
    def _check_orphans(snapshot: IntegritySnapshot, index: RelationshipIndex, sections: Dict[CheckName, CheckSection]):
        for shipment in index.shipments:
            if index.shipment_is_orphan(shipment):
                sections[CheckName.ORPHANED_SHIPMENTS].add(EntityKind.SHIPMENT.value, shipment.id, {
                    "shipmentId": shipment.shipment_id,
                    "prNumber": shipment.pr_number,
                })
        for po in index.pos:
            if index.po_is_orphan(po):
                sections[CheckName.ORPHANED_PURCHASE_ORDERS].add(EntityKind.PO.value, po.id, {
                    "id": po.id,
                    "poNumber": po.po_number,
                    "prNumbers": po.pr_numbers,
                })
        for grn in index.grns:
            if index.grn_is_orphan(grn):
                sections[CheckName.ORPHANED_GRNS].add(EntityKind.GRN.value, grn.id, {
                    "id": grn.id,
                    "grnNumber": grn.grn_number,
                    "poNumber": grn.po_number,
                })
        for doc in snapshot.invoices:
            invoice = Invoice.from_document(doc)
            if index.invoice_is_orphan(invoice):
                sections[CheckName.ORPHANED_INVOICES].add(EntityKind.INVOICE.value, invoice.id, {
                    "id": invoice.id,
                    "invoiceNumber": invoice.invoice_number,
                    "grnNumber": invoice.grn_number,
                })

    def _check_references(self, snapshot: IntegritySnapshot, section: CheckSection):
        for kind, doc in snapshot.documents():
            for field_name in ("companyId", "vendorId"):
                if field_name not in doc or doc[field_name] in (None, ""):
                    continue
                value = doc[field_name]
                if isinstance(value, dict):
                    value = value.get("id")
                if value is None or not self.canonical_id.match(str(value)):
                    section.add(kind.value, doc.get("id"), {
                        "entityType": kind.value,
                        "id": doc.get("id"),
                        "field": field_name,
                        "value": str(value),
                    })


@dataclass
class IntegrityReport:
    sections: Dict[CheckName, CheckSection]
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def section(self, name: CheckName) -> CheckSection:
        return self.sections[name]

    @property
    def overall_status(self) -> CheckStatus:
        statuses = {s.status for s in self.sections.values()}
        if CheckStatus.FAIL in statuses:
            return CheckStatus.FAIL
        if CheckStatus.WARN in statuses:
            return CheckStatus.WARN
        return CheckStatus.PASS

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"generatedAt": self.generated_at, "status": self.overall_status.value}
        for name, section in self.sections.items():
            result[name.value] = section.to_dict()
        return result
