"""
Procurement Workflow Hub - Status Reconciliation Model

Every workflow entity carries a legacy status (the vocabulary older screens and
reports still write) and a unified status (the canonical, cross-entity
vocabulary). This module owns the fixed legacy -> unified tables and the
cascade predicates the engine and the integrity checker share.

Rules:
- unified_status_for() is pure and deterministic
- many legacy values may map to one unified value, never the reverse
- an unknown legacy value returns UNKNOWN; callers flag the record and
  leave it untouched, they never guess. The integrity report carries
  safe_default_for() as the status an operator would start from
"""

from enum import Enum
from typing import Optional, Dict, Any, Union
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# ENTITY KINDS
# =============================================================================

class EntityKind(str, Enum):
    """Workflow entity kinds covered by the reconciliation model."""
    ORDER = "ORDER"          # Simple (non-PR) order workflow
    PR = "PR"                # Purchase requisition (order in PR-enabled companies)
    PO = "PO"
    SHIPMENT = "SHIPMENT"
    GRN = "GRN"
    INVOICE = "INVOICE"


class UnknownStatus(str, Enum):
    """Explicit result for a legacy value outside the known vocabulary."""
    UNKNOWN = "UNKNOWN"


UNKNOWN = UnknownStatus.UNKNOWN


# =============================================================================
# LEGACY STATUS VOCABULARIES
# =============================================================================

class LegacyOrderStatus(str, Enum):
    AWAITING_APPROVAL = "Awaiting approval"
    AWAITING_FULFILMENT = "Awaiting fulfilment"
    DISPATCHED = "Dispatched"
    DELIVERED = "Delivered"


class LegacyPRStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    PENDING_SITE_ADMIN_APPROVAL = "PENDING_SITE_ADMIN_APPROVAL"
    SITE_ADMIN_APPROVED = "SITE_ADMIN_APPROVED"
    PENDING_COMPANY_ADMIN_APPROVAL = "PENDING_COMPANY_ADMIN_APPROVAL"
    COMPANY_ADMIN_APPROVED = "COMPANY_ADMIN_APPROVED"
    REJECTED_BY_SITE_ADMIN = "REJECTED_BY_SITE_ADMIN"
    REJECTED_BY_COMPANY_ADMIN = "REJECTED_BY_COMPANY_ADMIN"
    PO_CREATED = "PO_CREATED"
    FULLY_DELIVERED = "FULLY_DELIVERED"
    CANCELLED = "CANCELLED"


class LegacyPOStatus(str, Enum):
    CREATED = "CREATED"
    SENT_TO_VENDOR = "SENT_TO_VENDOR"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    IN_FULFILMENT = "IN_FULFILMENT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class LegacyShipmentStatus(str, Enum):
    CREATED = "CREATED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class LegacyGRNStatus(str, Enum):
    CREATED = "CREATED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    INVOICED = "INVOICED"
    RECEIVED = "RECEIVED"
    CLOSED = "CLOSED"


class LegacyGRNApprovalStatus(str, Enum):
    """Newer grnStatus field; takes precedence over LegacyGRNStatus when set."""
    RAISED = "RAISED"
    APPROVED = "APPROVED"


class LegacyInvoiceStatus(str, Enum):
    RAISED = "RAISED"
    APPROVED = "APPROVED"


# =============================================================================
# UNIFIED STATUS VOCABULARIES
# =============================================================================

class UnifiedOrderStatus(str, Enum):
    CREATED = "CREATED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    IN_FULFILMENT = "IN_FULFILMENT"
    DISPATCHED = "DISPATCHED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class UnifiedPRStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_SITE_ADMIN_APPROVAL = "PENDING_SITE_ADMIN_APPROVAL"
    SITE_ADMIN_APPROVED = "SITE_ADMIN_APPROVED"
    PENDING_COMPANY_ADMIN_APPROVAL = "PENDING_COMPANY_ADMIN_APPROVAL"
    COMPANY_ADMIN_APPROVED = "COMPANY_ADMIN_APPROVED"
    REJECTED = "REJECTED"
    LINKED_TO_PO = "LINKED_TO_PO"
    IN_SHIPMENT = "IN_SHIPMENT"
    PARTIALLY_DELIVERED = "PARTIALLY_DELIVERED"
    FULLY_DELIVERED = "FULLY_DELIVERED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class UnifiedPOStatus(str, Enum):
    CREATED = "CREATED"
    SENT_TO_VENDOR = "SENT_TO_VENDOR"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    IN_FULFILMENT = "IN_FULFILMENT"
    PARTIALLY_SHIPPED = "PARTIALLY_SHIPPED"
    FULLY_SHIPPED = "FULLY_SHIPPED"
    PARTIALLY_DELIVERED = "PARTIALLY_DELIVERED"
    FULLY_DELIVERED = "FULLY_DELIVERED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class UnifiedShipmentStatus(str, Enum):
    CREATED = "CREATED"
    MANIFESTED = "MANIFESTED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    RETURNED = "RETURNED"
    LOST = "LOST"


class UnifiedGRNStatus(str, Enum):
    DRAFT = "DRAFT"
    RAISED = "RAISED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    INVOICED = "INVOICED"
    CLOSED = "CLOSED"


class UnifiedInvoiceStatus(str, Enum):
    RAISED = "RAISED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    PAID = "PAID"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"


UnifiedStatus = Union[
    UnifiedOrderStatus, UnifiedPRStatus, UnifiedPOStatus,
    UnifiedShipmentStatus, UnifiedGRNStatus, UnifiedInvoiceStatus,
]


# =============================================================================
# LEGACY -> UNIFIED TABLES
# =============================================================================

# Format: {legacy_value: unified_status}
LEGACY_TO_UNIFIED: Dict[EntityKind, Dict[str, Enum]] = {
    EntityKind.ORDER: {
        LegacyOrderStatus.AWAITING_APPROVAL.value: UnifiedOrderStatus.PENDING_APPROVAL,
        LegacyOrderStatus.AWAITING_FULFILMENT.value: UnifiedOrderStatus.IN_FULFILMENT,
        LegacyOrderStatus.DISPATCHED.value: UnifiedOrderStatus.DISPATCHED,
        LegacyOrderStatus.DELIVERED.value: UnifiedOrderStatus.DELIVERED,
    },
    EntityKind.PR: {
        LegacyPRStatus.DRAFT.value: UnifiedPRStatus.DRAFT,
        LegacyPRStatus.SUBMITTED.value: UnifiedPRStatus.PENDING_SITE_ADMIN_APPROVAL,
        LegacyPRStatus.PENDING_SITE_ADMIN_APPROVAL.value: UnifiedPRStatus.PENDING_SITE_ADMIN_APPROVAL,
        LegacyPRStatus.SITE_ADMIN_APPROVED.value: UnifiedPRStatus.SITE_ADMIN_APPROVED,
        LegacyPRStatus.PENDING_COMPANY_ADMIN_APPROVAL.value: UnifiedPRStatus.PENDING_COMPANY_ADMIN_APPROVAL,
        LegacyPRStatus.COMPANY_ADMIN_APPROVED.value: UnifiedPRStatus.COMPANY_ADMIN_APPROVED,
        LegacyPRStatus.REJECTED_BY_SITE_ADMIN.value: UnifiedPRStatus.REJECTED,
        LegacyPRStatus.REJECTED_BY_COMPANY_ADMIN.value: UnifiedPRStatus.REJECTED,
        LegacyPRStatus.PO_CREATED.value: UnifiedPRStatus.LINKED_TO_PO,
        LegacyPRStatus.FULLY_DELIVERED.value: UnifiedPRStatus.FULLY_DELIVERED,
        LegacyPRStatus.CANCELLED.value: UnifiedPRStatus.CANCELLED,
    },
    EntityKind.PO: {
        LegacyPOStatus.CREATED.value: UnifiedPOStatus.CREATED,
        LegacyPOStatus.SENT_TO_VENDOR.value: UnifiedPOStatus.SENT_TO_VENDOR,
        LegacyPOStatus.ACKNOWLEDGED.value: UnifiedPOStatus.ACKNOWLEDGED,
        LegacyPOStatus.IN_FULFILMENT.value: UnifiedPOStatus.IN_FULFILMENT,
        LegacyPOStatus.COMPLETED.value: UnifiedPOStatus.FULLY_DELIVERED,
        LegacyPOStatus.CANCELLED.value: UnifiedPOStatus.CANCELLED,
    },
    EntityKind.SHIPMENT: {
        LegacyShipmentStatus.CREATED.value: UnifiedShipmentStatus.CREATED,
        LegacyShipmentStatus.IN_TRANSIT.value: UnifiedShipmentStatus.IN_TRANSIT,
        LegacyShipmentStatus.DELIVERED.value: UnifiedShipmentStatus.DELIVERED,
        LegacyShipmentStatus.FAILED.value: UnifiedShipmentStatus.FAILED,
    },
    EntityKind.GRN: {
        LegacyGRNStatus.CREATED.value: UnifiedGRNStatus.RAISED,
        LegacyGRNStatus.ACKNOWLEDGED.value: UnifiedGRNStatus.APPROVED,
        LegacyGRNStatus.INVOICED.value: UnifiedGRNStatus.INVOICED,
        LegacyGRNStatus.RECEIVED.value: UnifiedGRNStatus.APPROVED,
        LegacyGRNStatus.CLOSED.value: UnifiedGRNStatus.CLOSED,
    },
    EntityKind.INVOICE: {
        LegacyInvoiceStatus.RAISED.value: UnifiedInvoiceStatus.RAISED,
        LegacyInvoiceStatus.APPROVED.value: UnifiedInvoiceStatus.APPROVED,
    },
}

GRN_APPROVAL_TO_UNIFIED: Dict[str, UnifiedGRNStatus] = {
    LegacyGRNApprovalStatus.RAISED.value: UnifiedGRNStatus.RAISED,
    LegacyGRNApprovalStatus.APPROVED.value: UnifiedGRNStatus.APPROVED,
}

# Written by the engine when it moves an entity to a unified status
UNIFIED_TO_LEGACY: Dict[EntityKind, Dict[Enum, str]] = {
    EntityKind.PR: {
        UnifiedPRStatus.DRAFT: LegacyPRStatus.DRAFT.value,
        UnifiedPRStatus.PENDING_SITE_ADMIN_APPROVAL: LegacyPRStatus.PENDING_SITE_ADMIN_APPROVAL.value,
        UnifiedPRStatus.SITE_ADMIN_APPROVED: LegacyPRStatus.SITE_ADMIN_APPROVED.value,
        UnifiedPRStatus.PENDING_COMPANY_ADMIN_APPROVAL: LegacyPRStatus.PENDING_COMPANY_ADMIN_APPROVAL.value,
        UnifiedPRStatus.COMPANY_ADMIN_APPROVED: LegacyPRStatus.COMPANY_ADMIN_APPROVED.value,
        UnifiedPRStatus.LINKED_TO_PO: LegacyPRStatus.PO_CREATED.value,
        UnifiedPRStatus.FULLY_DELIVERED: LegacyPRStatus.FULLY_DELIVERED.value,
        UnifiedPRStatus.CANCELLED: LegacyPRStatus.CANCELLED.value,
    },
    EntityKind.PO: {
        UnifiedPOStatus.CREATED: LegacyPOStatus.CREATED.value,
        UnifiedPOStatus.SENT_TO_VENDOR: LegacyPOStatus.SENT_TO_VENDOR.value,
        UnifiedPOStatus.ACKNOWLEDGED: LegacyPOStatus.ACKNOWLEDGED.value,
        UnifiedPOStatus.IN_FULFILMENT: LegacyPOStatus.IN_FULFILMENT.value,
        UnifiedPOStatus.FULLY_DELIVERED: LegacyPOStatus.COMPLETED.value,
        UnifiedPOStatus.CANCELLED: LegacyPOStatus.CANCELLED.value,
    },
}

# Starting state used when a legacy value cannot be mapped
SAFE_DEFAULTS: Dict[EntityKind, Enum] = {
    EntityKind.ORDER: UnifiedOrderStatus.CREATED,
    EntityKind.PR: UnifiedPRStatus.DRAFT,
    EntityKind.PO: UnifiedPOStatus.CREATED,
    EntityKind.SHIPMENT: UnifiedShipmentStatus.CREATED,
    EntityKind.GRN: UnifiedGRNStatus.DRAFT,
    EntityKind.INVOICE: UnifiedInvoiceStatus.RAISED,
}

# Field names on the persisted documents
STATUS_FIELDS: Dict[EntityKind, Dict[str, str]] = {
    EntityKind.ORDER: {"legacy": "status", "unified": "unified_status"},
    EntityKind.PR: {"legacy": "pr_status", "unified": "unified_pr_status"},
    EntityKind.PO: {"legacy": "po_status", "unified": "unified_po_status"},
    EntityKind.SHIPMENT: {"legacy": "shipmentStatus", "unified": "unified_shipment_status"},
    EntityKind.GRN: {"legacy": "status", "unified": "unified_grn_status", "approval": "grnStatus"},
    EntityKind.INVOICE: {"legacy": "invoiceStatus", "unified": "unified_invoice_status"},
}


# =============================================================================
# MAPPING FUNCTIONS
# =============================================================================

def unified_status_for(
    kind: EntityKind,
    legacy_status: Optional[str],
    approval_status: Optional[str] = None
) -> Union[Enum, UnknownStatus]:
    """
    Map a legacy status to its unified image.

    Args:
        kind: Entity kind
        legacy_status: Current legacy status value
        approval_status: GRN only - the newer grnStatus field, preferred when set

    Returns:
        The unified status enum member, or UNKNOWN if the legacy value is
        outside the known vocabulary
    """
    kind = EntityKind(kind)

    if kind == EntityKind.GRN and approval_status in GRN_APPROVAL_TO_UNIFIED:
        return GRN_APPROVAL_TO_UNIFIED[approval_status]

    table = LEGACY_TO_UNIFIED[kind]
    if legacy_status in table:
        return table[legacy_status]
    return UNKNOWN


def safe_default_for(kind: EntityKind) -> Enum:
    """Initial unified state used when a legacy value is unknown."""
    return SAFE_DEFAULTS[EntityKind(kind)]


def legacy_status_for(kind: EntityKind, unified_status: Enum) -> str:
    """
    Legacy value written alongside a unified status (dual write).

    Rejections are not in this table: the legacy value records which stage
    rejected, so the engine writes it explicitly.
    """
    table = UNIFIED_TO_LEGACY.get(EntityKind(kind), {})
    if unified_status not in table:
        raise KeyError(f"No legacy value for {kind} status {unified_status}")
    return table[unified_status]


def known_legacy_statuses(kind: EntityKind) -> list:
    return list(LEGACY_TO_UNIFIED[EntityKind(kind)].keys())


def check_consistency(kind: EntityKind, document: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Compare a document's stored unified status with the recomputed one.

    Returns:
        None when consistent, otherwise a mismatch record with
        expected/actual values and whether the legacy value was known.
    """
    kind = EntityKind(kind)
    fields = STATUS_FIELDS[kind]
    legacy = document.get(fields["legacy"])
    stored = document.get(fields["unified"])
    approval = document.get(fields["approval"]) if "approval" in fields else None

    expected = unified_status_for(kind, legacy, approval)
    if expected is UNKNOWN:
        return {
            "legacy_status": legacy,
            "stored_unified_status": stored,
            "expected_unified_status": None,
            "known": False,
        }

    if stored != expected.value:
        return {
            "legacy_status": legacy,
            "stored_unified_status": stored,
            "expected_unified_status": expected.value,
            "known": True,
        }
    return None


# =============================================================================
# CASCADE PREDICATES
# =============================================================================

TERMINAL_DELIVERY_VALUES = {"DELIVERED"}

# Initial flag values every order is created with; they claim nothing
UNCLAIMED_DISPATCH_VALUES = {"", "AWAITING_FULFILMENT"}
UNCLAIMED_DELIVERY_VALUES = {"", "NOT_DELIVERED"}

# Unified PR states that only make sense once a shipment exists
SHIPMENT_BACKED_PR_STATUSES = {
    UnifiedPRStatus.IN_SHIPMENT.value,
    UnifiedPRStatus.PARTIALLY_DELIVERED.value,
    UnifiedPRStatus.FULLY_DELIVERED.value,
}


def _upper(value: Any) -> str:
    return str(value or "").upper()


def is_terminal_delivery_claim(pr: Dict[str, Any]) -> bool:
    """PR claims it was fully delivered (legacy, unified, or delivery flag)."""
    return (
        pr.get("pr_status") == LegacyPRStatus.FULLY_DELIVERED.value
        or pr.get("unified_pr_status") == UnifiedPRStatus.FULLY_DELIVERED.value
        or _upper(pr.get("deliveryStatus")) in TERMINAL_DELIVERY_VALUES
    )


def has_intermediate_shipment_claim(pr: Dict[str, Any]) -> bool:
    """PR carries shipment flags weaker than a delivery claim."""
    if is_terminal_delivery_claim(pr):
        return False
    return (
        _upper(pr.get("dispatchStatus")) not in UNCLAIMED_DISPATCH_VALUES
        or _upper(pr.get("deliveryStatus")) not in UNCLAIMED_DELIVERY_VALUES
        or pr.get("unified_pr_status") in SHIPMENT_BACKED_PR_STATUSES
    )


def is_shipment_delivered(shipment: Dict[str, Any]) -> bool:
    return (
        shipment.get("shipmentStatus") == LegacyShipmentStatus.DELIVERED.value
        or shipment.get("unified_shipment_status") == UnifiedShipmentStatus.DELIVERED.value
    )
