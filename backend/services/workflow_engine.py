"""
Procurement Workflow Hub - PR Workflow Stage Engine

Drives purchase requisitions through the per-company approval stages and
links approved PRs to purchase orders.

Each operation:
1. loads the PR and derives its unified status from the legacy value
2. validates the actor, the stage and the company configuration
3. writes legacy + unified status together with a conditional update on
   `version` (PO creation writes inside a repository transaction)
4. appends a workflow_history entry
5. emits a WorkflowEvent after the write commits

The engine never talks to notification code directly; subscribers of the
event bus do that out of band.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, List, Any
import logging

from services.entity_repository import EntityRepository
from services.workflow_entities import PurchaseRequisition
from services.workflow_config import (
    Actor,
    ApprovalStage,
    CompanyWorkflowConfig,
    RejectionReasonCatalog,
    Role,
    StageDefinition,
    STAGE_TABLE,
    STAGES_BY_NAME,
    STAGE_APPROVED,
    PO_CREATOR_ROLES,
)
from services.workflow_errors import (
    WorkflowError,
    ValidationError,
    Forbidden,
    EntityNotFoundError,
    PartialFailure,
    StaleStateError,
)
from services.workflow_events import (
    WorkflowEvent,
    WorkflowEventBus,
    WorkflowEventType,
    TriggeredBy,
    RejectionInfo,
    EntitySnapshot,
)
from services.workflow_status import (
    EntityKind,
    LegacyPRStatus,
    LegacyPOStatus,
    UnifiedPRStatus,
    UnifiedPOStatus,
    UNKNOWN,
    unified_status_for,
    legacy_status_for,
)

logger = logging.getLogger(__name__)


# =============================================================================
# WORKFLOW HISTORY
# =============================================================================

class WorkflowHistoryEntry:
    """Represents a single entry in an entity's workflow history."""

    def __init__(
        self,
        from_status: Optional[str],
        to_status: str,
        event: str,
        actor: Optional[Actor] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict] = None
    ):
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.from_status = from_status
        self.to_status = to_status
        self.event = event
        self.actor = actor.user_id if actor else "system"
        self.actor_role = actor.role.value if actor else Role.SYSTEM.value
        self.reason = reason
        self.metadata = metadata or {}

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "event": self.event,
            "actor": self.actor,
            "actor_role": self.actor_role,
            "reason": self.reason,
            "metadata": self.metadata
        }


# =============================================================================
# STAGE EVALUATION
# =============================================================================

PENDING_STAGE_BY_STATUS: Dict[str, ApprovalStage] = {
    s.pending_status.value: s.stage for s in STAGE_TABLE
}

SUBMITTABLE_STATUSES = (UnifiedPRStatus.DRAFT, UnifiedPRStatus.REJECTED)

CANCELLABLE_STATUSES = (
    UnifiedPRStatus.DRAFT,
    UnifiedPRStatus.PENDING_SITE_ADMIN_APPROVAL,
    UnifiedPRStatus.PENDING_COMPANY_ADMIN_APPROVAL,
)


def stages_for(config: CompanyWorkflowConfig) -> List[StageDefinition]:
    """Enabled approval stages for a company, in visiting order."""
    return [s for s in STAGE_TABLE if config.is_stage_enabled(s.stage)]


def next_stage(config: CompanyWorkflowConfig, stage: ApprovalStage) -> Optional[StageDefinition]:
    """
    First enabled stage after `stage` in table order, or None.

    `stage` itself need not be enabled: a PR submitted before its stage was
    switched off still moves on to the next enabled one.
    """
    position = [s.stage for s in STAGE_TABLE].index(ApprovalStage(stage))
    for candidate in STAGE_TABLE[position + 1:]:
        if config.is_stage_enabled(candidate.stage):
            return candidate
    return None


def final_approved_status(config: CompanyWorkflowConfig) -> UnifiedPRStatus:
    """Status a PR must hold to be linked to a PO."""
    enabled = stages_for(config)
    if not enabled:
        return UnifiedPRStatus.COMPANY_ADMIN_APPROVED
    return enabled[-1].approved_status


def current_unified_status(pr: Dict[str, Any]) -> UnifiedPRStatus:
    """
    Unified status derived from the legacy field, never the stored copy.

    Raises:
        ValidationError: the legacy value is outside the known vocabulary
    """
    unified = unified_status_for(EntityKind.PR, pr.get("pr_status"))
    if unified is UNKNOWN:
        raise ValidationError(
            f"PR {pr.get('id')} has unknown legacy status '{pr.get('pr_status')}'",
            {"id": pr.get("id"), "pr_status": pr.get("pr_status")}
        )
    return unified


def stage_of(pr: Dict[str, Any], config: Optional[CompanyWorkflowConfig] = None) -> Optional[str]:
    """
    Approval stage a PR is waiting in.

    Returns the stage name for a pending PR, STAGE_APPROVED once the final
    stage has approved, and None otherwise (draft, rejected, linked...).
    """
    unified = unified_status_for(EntityKind.PR, pr.get("pr_status"))
    if unified is UNKNOWN:
        return None
    if unified.value in PENDING_STAGE_BY_STATUS:
        return PENDING_STAGE_BY_STATUS[unified.value].value
    final = final_approved_status(config) if config else UnifiedPRStatus.COMPANY_ADMIN_APPROVED
    if unified == final:
        return STAGE_APPROVED
    return None


# =============================================================================
# MAIN WORKFLOW ENGINE
# =============================================================================

class PRWorkflowEngine:
    """
    PR approval state machine.

    Usage:
        engine = PRWorkflowEngine(repository, event_bus)
        pr = await engine.submit(pr_id, actor, config)
    """

    def __init__(
        self,
        repository: EntityRepository,
        event_bus: Optional[WorkflowEventBus] = None,
        rejection_reasons: Optional[RejectionReasonCatalog] = None
    ):
        self.repository = repository
        self.event_bus = event_bus
        self.rejection_reasons = rejection_reasons or RejectionReasonCatalog()

    # ----- helpers -----

    @staticmethod
    def _require_workflow(config: CompanyWorkflowConfig):
        if not config.enable_pr_po_workflow:
            raise ValidationError(
                f"PR/PO workflow is disabled for company {config.company_id}",
                {"company_id": config.company_id}
            )

    async def find_pr(self, pr_id: str) -> Dict[str, Any]:
        """Look a PR up by document id, then by PR number."""
        pr = await self.repository.find_by_id(EntityKind.PR, pr_id)
        if pr is None:
            matches = await self.repository.find_by_reference(EntityKind.PR, {"pr_number": pr_id})
            pr = matches[0] if matches else None
        if pr is None:
            raise EntityNotFoundError(f"PR {pr_id} not found", {"id": pr_id})
        return pr

    async def _load_pr(self, pr_id: str, config: CompanyWorkflowConfig) -> Dict[str, Any]:
        pr = await self.find_pr(pr_id)
        if PurchaseRequisition.from_document(pr).company_id != str(config.company_id):
            raise ValidationError(
                f"PR {pr_id} does not belong to company {config.company_id}",
                {"id": pr_id, "company_id": config.company_id}
            )
        return pr

    @staticmethod
    def _require_owner(pr: Dict[str, Any], actor: Actor, action: str):
        """Only the requestor or a company admin may submit or cancel."""
        if actor.user_id == PurchaseRequisition.from_document(pr).requestor_id:
            return
        if actor.role not in PO_CREATOR_ROLES:
            raise Forbidden(
                f"{actor.user_id} cannot {action} PR {pr.get('id')}",
                {"id": pr.get("id"), "role": actor.role.value}
            )

    async def _transition(
        self,
        pr: Dict[str, Any],
        to_status: UnifiedPRStatus,
        event_type: WorkflowEventType,
        actor: Actor,
        legacy_value: Optional[str] = None,
        reason: Optional[str] = None,
        extra_fields: Optional[Dict[str, Any]] = None,
        unset: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Dual-write legacy + unified status with a version-guarded update."""
        from_status = current_unified_status(pr).value
        entry = WorkflowHistoryEntry(
            from_status=from_status,
            to_status=to_status.value,
            event=event_type.value,
            actor=actor,
            reason=reason,
            metadata=metadata,
        )
        fields = {
            "pr_status": legacy_value or legacy_status_for(EntityKind.PR, to_status),
            "unified_pr_status": to_status.value,
            "workflow_history": list(pr.get("workflow_history") or []) + [entry.to_dict()],
        }
        fields.update(extra_fields or {})

        updated = await self.repository.update(
            EntityKind.PR, pr["id"], fields,
            expected_version=int(pr.get("version") or 0),
            unset=unset,
        )
        logger.info(
            "PR transition: pr=%s, %s -> %s (event=%s, actor=%s/%s)",
            pr["id"], from_status, to_status.value, event_type.value, actor.user_id, actor.role.value
        )
        return updated

    def _emit(
        self,
        event_type: WorkflowEventType,
        entity: Dict[str, Any],
        actor: Actor,
        current_stage: Optional[str],
        current_status: str,
        previous_stage: Optional[str] = None,
        previous_status: Optional[str] = None,
        rejection: Optional[RejectionInfo] = None,
        entity_type: str = EntityKind.PR.value
    ) -> Optional[WorkflowEvent]:
        if self.event_bus is None:
            return None
        event = WorkflowEvent(
            event_type=event_type.value,
            company_id=str(entity.get("companyId")),
            entity_type=entity_type,
            entity_id=entity["id"],
            current_stage=current_stage,
            current_status=current_status,
            previous_stage=previous_stage,
            previous_status=previous_status,
            triggered_by=TriggeredBy(
                user_id=actor.user_id,
                user_name=actor.user_name,
                user_role=actor.role.value,
                user_email=actor.email,
            ),
            rejection=rejection,
            entity_snapshot=EntitySnapshot.from_document(entity),
        )
        self.event_bus.emit(event)
        return event

    # ----- operations -----

    async def submit(self, pr_id: str, actor: Actor, config: CompanyWorkflowConfig) -> Dict[str, Any]:
        """
        Send a draft (or rejected) PR into the first enabled approval stage.

        With no stage enabled the PR is approved immediately.
        """
        self._require_workflow(config)
        pr = await self._load_pr(pr_id, config)
        current = current_unified_status(pr)

        self._require_owner(pr, actor, "submit")
        if current not in SUBMITTABLE_STATUSES:
            raise ValidationError(
                f"PR {pr_id} cannot be submitted from {current.value}",
                {"id": pr_id, "status": current.value}
            )

        resubmission = current == UnifiedPRStatus.REJECTED
        event_type = WorkflowEventType.ENTITY_RESUBMITTED if resubmission else WorkflowEventType.ENTITY_SUBMITTED

        enabled = stages_for(config)
        if enabled:
            target = enabled[0].pending_status
            target_stage = enabled[0].stage.value
        else:
            target = UnifiedPRStatus.COMPANY_ADMIN_APPROVED
            target_stage = STAGE_APPROVED

        updated = await self._transition(
            pr, target, event_type, actor,
            unset=["rejection"] if resubmission else None,
        )
        self._emit(
            event_type, updated, actor,
            current_stage=target_stage,
            current_status=target.value,
            previous_status=current.value,
        )
        return updated

    async def approve_at_stage(
        self,
        pr_id: str,
        stage: str,
        actor: Actor,
        config: CompanyWorkflowConfig,
        expected_version: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Approve a PR at `stage`.

        Raises:
            Forbidden: actor role not allowed at the stage
            StaleStateError: the PR is no longer waiting at `stage`, or its
                version differs from expected_version
        """
        self._require_workflow(config)
        try:
            stage = ApprovalStage(stage)
        except ValueError:
            raise ValidationError(f"Unknown approval stage '{stage}'", {"stage": stage})

        stage_def = STAGES_BY_NAME[stage]
        if actor.role not in stage_def.allowed_roles:
            raise Forbidden(
                f"Role {actor.role.value} cannot approve at {stage.value}",
                {"stage": stage.value, "role": actor.role.value}
            )

        pr = await self._load_pr(pr_id, config)
        # A disabled stage still drains PRs that were already waiting in it
        if not config.is_stage_enabled(stage) and stage_of(pr) != stage.value:
            raise ValidationError(
                f"Stage {stage.value} is not enabled for company {config.company_id}",
                {"stage": stage.value}
            )
        self._check_expected(pr, stage, expected_version)

        following = next_stage(config, stage)
        if following:
            target = following.pending_status
            event_type = WorkflowEventType.ENTITY_APPROVED_AT_STAGE
            target_stage = following.stage.value
        else:
            target = final_approved_status(config)
            event_type = WorkflowEventType.ENTITY_APPROVED
            target_stage = STAGE_APPROVED

        updated = await self._transition(
            pr, target, event_type, actor,
            metadata={"stage": stage.value},
        )
        self._emit(
            event_type, updated, actor,
            current_stage=target_stage,
            current_status=target.value,
            previous_stage=stage.value,
            previous_status=stage_def.pending_status.value,
        )
        return updated

    @staticmethod
    def _check_expected(pr: Dict[str, Any], stage: ApprovalStage, expected_version: Optional[int]):
        if expected_version is not None and int(pr.get("version") or 0) != expected_version:
            raise StaleStateError(
                f"PR {pr['id']} changed since version {expected_version}",
                {"id": pr["id"], "expected_version": expected_version, "actual_version": pr.get("version", 0)}
            )
        current = current_unified_status(pr)
        if PENDING_STAGE_BY_STATUS.get(current.value) != stage:
            raise StaleStateError(
                f"PR {pr['id']} is not waiting at {stage.value} (status {current.value})",
                {"id": pr["id"], "stage": stage.value, "status": current.value}
            )

    async def reject(
        self,
        pr_id: str,
        actor: Actor,
        reason_code: str,
        config: CompanyWorkflowConfig,
        remarks: Optional[str] = None
    ) -> Dict[str, Any]:
        """Reject a PR waiting at an approval stage."""
        self._require_workflow(config)

        reason = self.rejection_reasons.get(EntityKind.PR.value, reason_code)
        if reason is None:
            raise ValidationError(
                f"Unknown rejection reason '{reason_code}' for PR",
                {"reason_code": reason_code}
            )
        if reason.requires_remarks and not (remarks or "").strip():
            raise ValidationError(
                f"Remarks are required for rejection reason {reason_code}",
                {"reason_code": reason_code}
            )

        pr = await self._load_pr(pr_id, config)
        current = current_unified_status(pr)
        stage = PENDING_STAGE_BY_STATUS.get(current.value)
        if stage is None:
            raise ValidationError(
                f"PR {pr_id} cannot be rejected from {current.value}",
                {"id": pr_id, "status": current.value}
            )
        stage_def = STAGES_BY_NAME[stage]
        if actor.role not in stage_def.allowed_roles:
            raise Forbidden(
                f"Role {actor.role.value} cannot reject at {stage.value}",
                {"stage": stage.value, "role": actor.role.value}
            )

        rejection = {
            "reason_code": reason.code,
            "reason_label": reason.label,
            "remarks": remarks,
            "rejected_by": actor.user_id,
            "rejected_by_role": actor.role.value,
            "rejected_at": datetime.now(timezone.utc).isoformat(),
            "stage": stage.value,
        }
        updated = await self._transition(
            pr, UnifiedPRStatus.REJECTED, WorkflowEventType.ENTITY_REJECTED, actor,
            legacy_value=stage_def.rejected_legacy_status.value,
            reason=reason.code,
            extra_fields={"rejection": rejection},
        )
        self._emit(
            WorkflowEventType.ENTITY_REJECTED, updated, actor,
            current_stage=stage.value,
            current_status=UnifiedPRStatus.REJECTED.value,
            previous_stage=stage.value,
            previous_status=current.value,
            rejection=RejectionInfo(reason.code, reason.label, remarks),
        )
        return updated

    async def cancel(
        self,
        pr_id: str,
        actor: Actor,
        config: CompanyWorkflowConfig,
        remarks: Optional[str] = None
    ) -> Dict[str, Any]:
        """Withdraw a PR before it is approved. Requestor or company admin only."""
        self._require_workflow(config)
        pr = await self._load_pr(pr_id, config)
        current = current_unified_status(pr)

        self._require_owner(pr, actor, "cancel")
        if current not in CANCELLABLE_STATUSES:
            raise ValidationError(
                f"PR {pr_id} cannot be cancelled from {current.value}",
                {"id": pr_id, "status": current.value}
            )

        previous_stage = stage_of(pr, config)
        updated = await self._transition(
            pr, UnifiedPRStatus.CANCELLED, WorkflowEventType.ENTITY_CANCELLED, actor,
            reason=remarks,
        )
        self._emit(
            WorkflowEventType.ENTITY_CANCELLED, updated, actor,
            current_stage=None,
            current_status=UnifiedPRStatus.CANCELLED.value,
            previous_stage=previous_stage,
            previous_status=current.value,
        )
        return updated

    async def create_po_from_prs(
        self,
        pr_ids: List[str],
        po_number: str,
        po_date: str,
        actor: Actor,
        config: CompanyWorkflowConfig
    ) -> Dict[str, Any]:
        """
        Create one PO from approved PRs and link every PR to it.

        All writes happen in one repository transaction.

        Raises:
            ValidationError: bad PR list, PO number in use, PR not eligible
            Forbidden: actor cannot create POs
            PartialFailure: the write phase failed and was rolled back
        """
        self._require_workflow(config)

        if not pr_ids:
            raise ValidationError("At least one PR is required to create a PO")
        if len(set(pr_ids)) != len(pr_ids):
            raise ValidationError("Duplicate PR ids in request", {"pr_ids": pr_ids})
        if len(pr_ids) > 1 and not config.allow_multi_pr_po:
            raise ValidationError(
                "single PR per PO only",
                {"pr_ids": pr_ids, "company_id": config.company_id}
            )
        if not (po_number or "").strip():
            raise ValidationError("PO number is required")
        if actor.role not in PO_CREATOR_ROLES:
            raise Forbidden(
                f"Role {actor.role.value} cannot create purchase orders",
                {"role": actor.role.value}
            )

        existing = await self.repository.find_by_reference(EntityKind.PO, {"client_po_number": po_number})
        if existing:
            raise ValidationError(f"PO number {po_number} already exists", {"po_number": po_number})

        required = final_approved_status(config)
        prs = []
        for pr_id in pr_ids:
            pr = await self._load_pr(pr_id, config)
            current = current_unified_status(pr)
            if current != required or pr.get("po_id"):
                raise ValidationError(
                    f"PR {pr_id} is not approved and unlinked (status {current.value})",
                    {"id": pr_id, "status": current.value, "required": required.value}
                )
            prs.append(pr)

        vendors = {PurchaseRequisition.from_document(p).vendor_id for p in prs}
        if len(vendors) > 1:
            raise ValidationError("PRs belong to different vendors", {"vendors": sorted(str(v) for v in vendors)})

        pr_numbers = [PurchaseRequisition.from_document(p).pr_number or p["id"] for p in prs]
        history = WorkflowHistoryEntry(
            from_status=None,
            to_status=UnifiedPOStatus.CREATED.value,
            event=WorkflowEventType.PO_CREATED.value,
            actor=actor,
            metadata={"pr_numbers": pr_numbers},
        )

        try:
            async with self.repository.transaction():
                po = await self.repository.create(EntityKind.PO, {
                    "client_po_number": po_number,
                    "po_date": po_date,
                    "companyId": config.company_id,
                    "vendorId": prs[0].get("vendorId"),
                    "pr_numbers": pr_numbers,
                    "po_status": LegacyPOStatus.CREATED.value,
                    "unified_po_status": UnifiedPOStatus.CREATED.value,
                    "created_by": actor.user_id,
                    "workflow_history": [history.to_dict()],
                })
                linked = []
                for pr in prs:
                    linked.append(await self._transition(
                        pr, UnifiedPRStatus.LINKED_TO_PO, WorkflowEventType.PO_CREATED, actor,
                        legacy_value=LegacyPRStatus.PO_CREATED.value,
                        extra_fields={"po_number": po_number, "po_id": po["id"]},
                        metadata={"po_number": po_number},
                    ))
        except (ValidationError, Forbidden):
            raise
        except Exception as e:
            code = e.code if isinstance(e, WorkflowError) else type(e).__name__
            logger.error("PO creation %s rolled back: %s", po_number, e)
            raise PartialFailure(
                f"PO {po_number} could not be created; no changes were applied",
                {"po_number": po_number, "pr_ids": pr_ids, "cause": code}
            )

        logger.info("Created PO %s from PRs %s (actor=%s)", po_number, pr_numbers, actor.user_id)
        self._emit(
            WorkflowEventType.PO_CREATED, po, actor,
            current_stage=None,
            current_status=UnifiedPOStatus.CREATED.value,
            entity_type=EntityKind.PO.value,
        )
        return {"purchase_order": po, "purchase_requisitions": linked}

    # ----- read-side helpers -----

    @staticmethod
    def available_actions(pr: Dict[str, Any], actor: Actor, config: CompanyWorkflowConfig) -> List[str]:
        """Actions the actor may take on the PR right now."""
        if not config.enable_pr_po_workflow:
            return []
        unified = unified_status_for(EntityKind.PR, pr.get("pr_status"))
        if unified is UNKNOWN:
            return []

        actions = []
        is_requestor = actor.user_id == PurchaseRequisition.from_document(pr).requestor_id
        if unified in SUBMITTABLE_STATUSES and (is_requestor or actor.role in PO_CREATOR_ROLES):
            actions.append("submit")

        stage = PENDING_STAGE_BY_STATUS.get(unified.value)
        if stage and actor.role in STAGES_BY_NAME[stage].allowed_roles:
            actions.extend(["approve", "reject"])

        if unified in CANCELLABLE_STATUSES and (is_requestor or actor.role in PO_CREATOR_ROLES):
            actions.append("cancel")

        if (unified == final_approved_status(config) and not pr.get("po_id")
                and actor.role in PO_CREATOR_ROLES):
            actions.append("create_po")
        return actions
