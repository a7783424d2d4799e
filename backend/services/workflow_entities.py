"""
Procurement Workflow Hub - Normalized Entities

Documents written over several releases spell the same reference in
different ways (pr_number / prNumber, vendorId as a string or as an embedded
object). They are normalized once here, at the persistence boundary, so the
engine and the checker never branch on field variants.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, List, Any


def _first(doc: Dict[str, Any], *keys: str) -> Any:
    """Return the first non-empty value among the given keys."""
    for key in keys:
        value = doc.get(key)
        if value not in (None, ""):
            return value
    return None


def _ref_id(value: Any) -> Optional[str]:
    """Reference fields may hold a plain ID or an embedded {id: ...} object."""
    if value is None:
        return None
    if isinstance(value, dict):
        inner = value.get("id") or value.get("_id")
        return str(inner) if inner is not None else None
    return str(value)


@dataclass
class PurchaseRequisition:
    """An order raised through the PR/PO workflow."""
    id: str
    company_id: Optional[str]
    vendor_id: Optional[str]
    pr_number: Optional[str]
    pr_status: Optional[str]
    unified_pr_status: Optional[str] = None
    po_number: Optional[str] = None
    po_id: Optional[str] = None
    dispatch_status: Optional[str] = None
    delivery_status: Optional[str] = None
    total_amount: float = 0.0
    requestor_id: Optional[str] = None
    requestor_email: Optional[str] = None
    requestor_name: Optional[str] = None
    location_id: Optional[str] = None
    version: int = 0
    workflow_history: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PurchaseRequisition":
        return cls(
            id=str(doc.get("id")),
            company_id=_ref_id(_first(doc, "companyId", "company_id")),
            vendor_id=_ref_id(_first(doc, "vendorId", "vendor_id", "vendor")),
            pr_number=_first(doc, "pr_number", "prNumber"),
            pr_status=doc.get("pr_status"),
            unified_pr_status=doc.get("unified_pr_status"),
            po_number=_first(doc, "po_number", "poNumber"),
            po_id=_ref_id(doc.get("po_id")),
            dispatch_status=doc.get("dispatchStatus"),
            delivery_status=doc.get("deliveryStatus"),
            total_amount=float(_first(doc, "total_amount", "totalAmount", "total") or 0),
            requestor_id=_ref_id(_first(doc, "employeeId", "requestor_id", "createdBy")),
            requestor_email=_first(doc, "employeeEmail", "requestor_email"),
            requestor_name=_first(doc, "employeeName", "requestor_name"),
            location_id=_ref_id(_first(doc, "locationId", "location_id")),
            version=int(doc.get("version") or 0),
            workflow_history=list(doc.get("workflow_history") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PurchaseOrder:
    id: str
    company_id: Optional[str]
    vendor_id: Optional[str]
    po_number: Optional[str]
    po_status: Optional[str]
    unified_po_status: Optional[str] = None
    pr_numbers: List[str] = field(default_factory=list)
    po_date: Optional[str] = None
    version: int = 0

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PurchaseOrder":
        pr_numbers = doc.get("pr_numbers") or doc.get("prNumbers") or []
        return cls(
            id=str(doc.get("id")),
            company_id=_ref_id(_first(doc, "companyId", "company_id")),
            vendor_id=_ref_id(_first(doc, "vendorId", "vendor_id", "vendor")),
            po_number=_first(doc, "client_po_number", "po_number", "poNumber"),
            po_status=doc.get("po_status"),
            unified_po_status=doc.get("unified_po_status"),
            pr_numbers=[str(n) for n in pr_numbers],
            po_date=doc.get("po_date"),
            version=int(doc.get("version") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Shipment:
    id: str
    shipment_id: Optional[str]
    pr_number: Optional[str]
    shipment_status: Optional[str]
    unified_shipment_status: Optional[str] = None
    version: int = 0

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Shipment":
        return cls(
            id=str(doc.get("id")),
            shipment_id=_first(doc, "shipmentId", "shipment_id", "id"),
            pr_number=_first(doc, "prNumber", "pr_number"),
            shipment_status=doc.get("shipmentStatus"),
            unified_shipment_status=doc.get("unified_shipment_status"),
            version=int(doc.get("version") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GoodsReceipt:
    id: str
    grn_number: Optional[str]
    po_number: Optional[str]
    po_id: Optional[str]
    status: Optional[str]
    grn_status: Optional[str] = None
    unified_grn_status: Optional[str] = None
    version: int = 0

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "GoodsReceipt":
        return cls(
            id=str(doc.get("id")),
            grn_number=_first(doc, "grnNumber", "grn_number"),
            po_number=_first(doc, "poNumber", "po_number"),
            po_id=_ref_id(doc.get("po_id")),
            status=doc.get("status"),
            grn_status=doc.get("grnStatus"),
            unified_grn_status=doc.get("unified_grn_status"),
            version=int(doc.get("version") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Invoice:
    id: str
    invoice_number: Optional[str]
    grn_id: Optional[str]
    grn_number: Optional[str]
    invoice_status: Optional[str]
    unified_invoice_status: Optional[str] = None
    version: int = 0

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Invoice":
        return cls(
            id=str(doc.get("id")),
            invoice_number=_first(doc, "invoiceNumber", "invoice_number"),
            grn_id=_ref_id(_first(doc, "grnId", "grn_id")),
            grn_number=_first(doc, "grnNumber", "grn_number"),
            invoice_status=doc.get("invoiceStatus"),
            unified_invoice_status=doc.get("unified_invoice_status"),
            version=int(doc.get("version") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
