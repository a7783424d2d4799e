"""
Procurement Workflow Hub - Company Workflow Configuration

Per-company switches that decide which approval stages a PR passes through,
the static stage decision table, and the rejection reason catalog.

Configuration is always passed to the engine explicitly; nothing here is a
process-wide default that the engine reads behind the caller's back.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, List, Any
import logging

from services.workflow_status import UnifiedPRStatus, LegacyPRStatus

logger = logging.getLogger(__name__)


# =============================================================================
# ROLES & STAGES
# =============================================================================

class Role(str, Enum):
    EMPLOYEE = "EMPLOYEE"
    SITE_ADMIN = "SITE_ADMIN"
    LOCATION_ADMIN = "LOCATION_ADMIN"
    COMPANY_ADMIN = "COMPANY_ADMIN"
    FINANCE_ADMIN = "FINANCE_ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"
    VENDOR = "VENDOR"
    SYSTEM = "SYSTEM"


class ApprovalStage(str, Enum):
    SITE_ADMIN_APPROVAL = "SITE_ADMIN_APPROVAL"
    COMPANY_ADMIN_APPROVAL = "COMPANY_ADMIN_APPROVAL"


# Pseudo-stage reported once every enabled stage has approved
STAGE_APPROVED = "APPROVED"


@dataclass(frozen=True)
class StageDefinition:
    stage: ApprovalStage
    allowed_roles: tuple
    pending_status: UnifiedPRStatus
    approved_status: UnifiedPRStatus
    rejected_legacy_status: LegacyPRStatus


# Ordered: a PR visits enabled stages in this order
STAGE_TABLE: List[StageDefinition] = [
    StageDefinition(
        stage=ApprovalStage.SITE_ADMIN_APPROVAL,
        allowed_roles=(Role.SITE_ADMIN, Role.LOCATION_ADMIN),
        pending_status=UnifiedPRStatus.PENDING_SITE_ADMIN_APPROVAL,
        approved_status=UnifiedPRStatus.SITE_ADMIN_APPROVED,
        rejected_legacy_status=LegacyPRStatus.REJECTED_BY_SITE_ADMIN,
    ),
    StageDefinition(
        stage=ApprovalStage.COMPANY_ADMIN_APPROVAL,
        allowed_roles=(Role.COMPANY_ADMIN, Role.SUPER_ADMIN),
        pending_status=UnifiedPRStatus.PENDING_COMPANY_ADMIN_APPROVAL,
        approved_status=UnifiedPRStatus.COMPANY_ADMIN_APPROVED,
        rejected_legacy_status=LegacyPRStatus.REJECTED_BY_COMPANY_ADMIN,
    ),
]

STAGES_BY_NAME: Dict[ApprovalStage, StageDefinition] = {s.stage: s for s in STAGE_TABLE}

PO_CREATOR_ROLES = (Role.COMPANY_ADMIN, Role.SUPER_ADMIN)


@dataclass
class Actor:
    """The authenticated user performing a workflow action."""
    user_id: str
    role: Role
    user_name: Optional[str] = None
    email: Optional[str] = None
    company_id: Optional[str] = None
    location_id: Optional[str] = None

    def __post_init__(self):
        self.role = Role(self.role)


# =============================================================================
# COMPANY CONFIGURATION
# =============================================================================

@dataclass
class CompanyWorkflowConfig:
    """Workflow switches for one company."""
    company_id: str
    enable_pr_po_workflow: bool = True
    enable_site_admin_pr_approval: bool = True
    require_company_admin_po_approval: bool = True
    allow_multi_pr_po: bool = False

    def is_stage_enabled(self, stage: ApprovalStage) -> bool:
        if stage == ApprovalStage.SITE_ADMIN_APPROVAL:
            return self.enable_site_admin_pr_approval
        if stage == ApprovalStage.COMPANY_ADMIN_APPROVAL:
            return self.require_company_admin_po_approval
        return False

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CompanyWorkflowConfig":
        return cls(
            company_id=str(doc.get("id") or doc.get("company_id")),
            enable_pr_po_workflow=bool(doc.get("enable_pr_po_workflow", True)),
            enable_site_admin_pr_approval=bool(doc.get("enable_site_admin_pr_approval", True)),
            require_company_admin_po_approval=bool(doc.get("require_company_admin_po_approval", True)),
            allow_multi_pr_po=bool(doc.get("allow_multi_pr_po", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CompanyConfigProvider(ABC):
    """Source of per-company workflow configuration."""

    @abstractmethod
    async def get(self, company_id: str) -> Optional[CompanyWorkflowConfig]:
        pass


class MongoCompanyConfigProvider(CompanyConfigProvider):
    """Reads the workflow switches from the companies collection."""

    def __init__(self, db):
        self.db = db

    async def get(self, company_id: str) -> Optional[CompanyWorkflowConfig]:
        doc = await self.db.companies.find_one({"id": company_id}, {"_id": 0})
        if not doc:
            logger.warning("Company %s not found while loading workflow config", company_id)
            return None
        return CompanyWorkflowConfig.from_document(doc)


class InMemoryCompanyConfigProvider(CompanyConfigProvider):

    def __init__(self, configs: Optional[List[CompanyWorkflowConfig]] = None):
        self._configs: Dict[str, CompanyWorkflowConfig] = {
            c.company_id: c for c in (configs or [])
        }

    def put(self, config: CompanyWorkflowConfig):
        self._configs[config.company_id] = config

    async def get(self, company_id: str) -> Optional[CompanyWorkflowConfig]:
        return self._configs.get(company_id)


# =============================================================================
# REJECTION REASONS
# =============================================================================

class RejectionReasonCode(str, Enum):
    # General
    INCOMPLETE_INFORMATION = "INCOMPLETE_INFORMATION"
    INVALID_DATA = "INVALID_DATA"
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    UNAUTHORIZED_REQUEST = "UNAUTHORIZED_REQUEST"
    # Order / PR
    ELIGIBILITY_EXHAUSTED = "ELIGIBILITY_EXHAUSTED"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    PRODUCT_UNAVAILABLE = "PRODUCT_UNAVAILABLE"
    DELIVERY_ADDRESS_INVALID = "DELIVERY_ADDRESS_INVALID"
    EMPLOYEE_NOT_ELIGIBLE = "EMPLOYEE_NOT_ELIGIBLE"
    # GRN
    QUANTITY_MISMATCH = "QUANTITY_MISMATCH"
    QUALITY_ISSUE = "QUALITY_ISSUE"
    DAMAGED_GOODS = "DAMAGED_GOODS"
    WRONG_ITEMS = "WRONG_ITEMS"
    MISSING_DOCUMENTATION = "MISSING_DOCUMENTATION"
    # Invoice
    PRICING_DISCREPANCY = "PRICING_DISCREPANCY"
    TAX_CALCULATION_ERROR = "TAX_CALCULATION_ERROR"
    PO_MISMATCH = "PO_MISMATCH"
    GRN_NOT_APPROVED = "GRN_NOT_APPROVED"
    OTHER = "OTHER"


@dataclass(frozen=True)
class RejectionReason:
    code: str
    label: str
    requires_remarks: bool = False
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _reason(code: RejectionReasonCode, label: str, **kwargs) -> RejectionReason:
    return RejectionReason(code.value, label, **kwargs)


_GENERAL_REASONS = [
    _reason(RejectionReasonCode.INCOMPLETE_INFORMATION, "Incomplete information"),
    _reason(RejectionReasonCode.INVALID_DATA, "Invalid data"),
    _reason(RejectionReasonCode.DUPLICATE_REQUEST, "Duplicate request"),
    _reason(RejectionReasonCode.POLICY_VIOLATION, "Policy violation", requires_remarks=True,
            description="Name the policy that was violated"),
    _reason(RejectionReasonCode.BUDGET_EXCEEDED, "Budget exceeded", requires_remarks=True,
            description="State the budget and the overrun"),
    _reason(RejectionReasonCode.UNAUTHORIZED_REQUEST, "Unauthorized request"),
]

_OTHER_REASON = _reason(RejectionReasonCode.OTHER, "Other", requires_remarks=True,
                        description="Explain the reason in the remarks")

DEFAULT_REJECTION_REASONS: Dict[str, List[RejectionReason]] = {
    "PR": _GENERAL_REASONS + [
        _reason(RejectionReasonCode.ELIGIBILITY_EXHAUSTED, "Eligibility exhausted"),
        _reason(RejectionReasonCode.INVALID_QUANTITY, "Invalid quantity"),
        _reason(RejectionReasonCode.PRODUCT_UNAVAILABLE, "Product unavailable"),
        _reason(RejectionReasonCode.DELIVERY_ADDRESS_INVALID, "Delivery address invalid"),
        _reason(RejectionReasonCode.EMPLOYEE_NOT_ELIGIBLE, "Employee not eligible"),
        _OTHER_REASON,
    ],
    "PO": _GENERAL_REASONS + [_OTHER_REASON],
    "GRN": _GENERAL_REASONS + [
        _reason(RejectionReasonCode.QUANTITY_MISMATCH, "Quantity mismatch"),
        _reason(RejectionReasonCode.QUALITY_ISSUE, "Quality issue"),
        _reason(RejectionReasonCode.DAMAGED_GOODS, "Damaged goods"),
        _reason(RejectionReasonCode.WRONG_ITEMS, "Wrong items"),
        _reason(RejectionReasonCode.MISSING_DOCUMENTATION, "Missing documentation"),
        _OTHER_REASON,
    ],
    "INVOICE": _GENERAL_REASONS + [
        _reason(RejectionReasonCode.PRICING_DISCREPANCY, "Pricing discrepancy"),
        _reason(RejectionReasonCode.TAX_CALCULATION_ERROR, "Tax calculation error"),
        _reason(RejectionReasonCode.PO_MISMATCH, "PO mismatch"),
        _reason(RejectionReasonCode.GRN_NOT_APPROVED, "GRN not approved"),
        _OTHER_REASON,
    ],
}


class RejectionReasonCatalog:
    """Lookup of rejection reasons per entity type."""

    def __init__(self, reasons: Optional[Dict[str, List[RejectionReason]]] = None):
        source = reasons if reasons is not None else DEFAULT_REJECTION_REASONS
        self._reasons: Dict[str, Dict[str, RejectionReason]] = {
            entity_type: {r.code: r for r in items}
            for entity_type, items in source.items()
        }

    def get(self, entity_type: str, code: str) -> Optional[RejectionReason]:
        return self._reasons.get(entity_type, {}).get(code)

    def list(self, entity_type: str) -> List[RejectionReason]:
        return list(self._reasons.get(entity_type, {}).values())

    def entity_types(self) -> List[str]:
        return list(self._reasons.keys())
