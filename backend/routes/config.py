"""
Procurement Workflow Hub - Config Router

Notification mappings, company workflow switches and the rejection reason
catalog.
"""

from fastapi import APIRouter, HTTPException, Query
from typing import Optional, List
from pydantic import BaseModel

from services.notifications.mappings import (
    NotificationMapping,
    ChannelConfig,
    CustomRecipient,
    MappingConditions,
    NotificationChannel,
    RecipientResolverType,
    WILDCARD,
)

router = APIRouter(prefix="/config", tags=["config"])

# Stores - set by main app
mapping_store = None
config_provider = None
rejection_reasons = None

def set_dependencies(mappings, provider, reasons):
    global mapping_store, config_provider, rejection_reasons
    mapping_store = mappings
    config_provider = provider
    rejection_reasons = reasons


# ==================== MODELS ====================

class ChannelModel(BaseModel):
    channel: NotificationChannel
    template_key: str
    priority: str = "NORMAL"


class CustomRecipientModel(BaseModel):
    email: str
    name: Optional[str] = None
    role: Optional[str] = None


class ConditionsModel(BaseModel):
    min_amount: Optional[float] = None
    entity_statuses: List[str] = []
    roles: List[str] = []


class NotificationMappingModel(BaseModel):
    company_id: str = WILDCARD
    entity_type: str = WILDCARD
    event_type: str
    stage_key: Optional[str] = None
    recipient_resolvers: List[RecipientResolverType]
    channels: List[ChannelModel]
    custom_recipients: List[CustomRecipientModel] = []
    exclude_action_performer: bool = False
    conditions: ConditionsModel = ConditionsModel()
    is_active: bool = True
    priority: int = 0
    description: Optional[str] = None

    def to_mapping(self, mapping_id: Optional[str] = None) -> NotificationMapping:
        kwargs = {}
        if mapping_id:
            kwargs["id"] = mapping_id
        return NotificationMapping(
            company_id=self.company_id,
            entity_type=self.entity_type,
            event_type=self.event_type,
            stage_key=self.stage_key,
            recipient_resolvers=list(self.recipient_resolvers),
            channels=[ChannelConfig(c.channel, c.template_key, c.priority) for c in self.channels],
            custom_recipients=[CustomRecipient(c.email, c.name, c.role) for c in self.custom_recipients],
            exclude_action_performer=self.exclude_action_performer,
            conditions=MappingConditions(
                min_amount=self.conditions.min_amount,
                entity_statuses=list(self.conditions.entity_statuses),
                roles=list(self.conditions.roles),
            ),
            is_active=self.is_active,
            priority=self.priority,
            description=self.description,
            **kwargs
        )


def _build(model: NotificationMappingModel, mapping_id: Optional[str] = None) -> NotificationMapping:
    try:
        return model.to_mapping(mapping_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"code": "WF_VALIDATION", "message": str(e)})


# ==================== NOTIFICATION MAPPINGS ====================

@router.get("/notification-mappings")
async def list_notification_mappings(company_id: str = Query(WILDCARD)):
    """Mappings visible to a company (its own plus wildcard ones)."""
    mappings = await mapping_store.list_for_company(company_id)
    return {"mappings": [m.to_dict() for m in mappings]}


@router.get("/notification-mappings/{mapping_id}")
async def get_notification_mapping(mapping_id: str):
    mapping = await mapping_store.get(mapping_id)
    if not mapping:
        raise HTTPException(status_code=404, detail={"code": "WF_NOT_FOUND", "message": "Mapping not found"})
    return mapping.to_dict()


@router.post("/notification-mappings")
async def create_notification_mapping(model: NotificationMappingModel):
    mapping = await mapping_store.save(_build(model))
    return mapping.to_dict()


@router.put("/notification-mappings/{mapping_id}")
async def update_notification_mapping(mapping_id: str, model: NotificationMappingModel):
    if not await mapping_store.get(mapping_id):
        raise HTTPException(status_code=404, detail={"code": "WF_NOT_FOUND", "message": "Mapping not found"})
    mapping = await mapping_store.save(_build(model, mapping_id))
    return mapping.to_dict()


@router.delete("/notification-mappings/{mapping_id}")
async def delete_notification_mapping(mapping_id: str):
    if not await mapping_store.delete(mapping_id):
        raise HTTPException(status_code=404, detail={"code": "WF_NOT_FOUND", "message": "Mapping not found"})
    return {"deleted": True, "id": mapping_id}


# ==================== COMPANY WORKFLOW ====================

@router.get("/companies/{company_id}/workflow")
async def get_company_workflow(company_id: str):
    """Workflow switches for a company."""
    config = await config_provider.get(company_id)
    if config is None:
        raise HTTPException(status_code=404, detail={"code": "WF_NOT_FOUND", "message": "Company not found"})
    return config.to_dict()


# ==================== REJECTION REASONS ====================

@router.get("/rejection-reasons")
async def list_rejection_reasons(entity_type: str = Query("PR")):
    reasons = rejection_reasons.list(entity_type)
    if not reasons:
        raise HTTPException(
            status_code=404,
            detail={"code": "WF_NOT_FOUND", "message": f"No rejection reasons for {entity_type}"}
        )
    return {"entity_type": entity_type, "reasons": [r.to_dict() for r in reasons]}
