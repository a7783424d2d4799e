"""
Procurement Workflow Hub - Integrity Router

On-demand cascade audit. The HTTP surface only ever plans repairs; LIVE
repair is reserved for the operator CLI.
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
import logging

from services.integrity.repair import RepairMode
from services.integrity.runner import run_cascade_integrity, RepairAlreadyRunningError
from services.workflow_settings import CASCADE_LOCK_FILE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrity", tags=["integrity"])

# Repository and lock file - set by main app
repository = None
lock_file = CASCADE_LOCK_FILE

def set_repository(repo, lock_path: str = CASCADE_LOCK_FILE):
    global repository, lock_file
    repository = repo
    lock_file = lock_path


class IntegrityCheckRequest(BaseModel):
    include_repair_plan: bool = True
    delete_unbacked_deliveries: bool = False


@router.post("/check")
async def run_integrity_check(request: IntegrityCheckRequest = IntegrityCheckRequest()):
    """Audit cascade invariants and return the dry-run repair plan."""
    try:
        return await run_cascade_integrity(
            repository,
            mode=RepairMode.DRY_RUN,
            repair=request.include_repair_plan,
            delete_unbacked_deliveries=request.delete_unbacked_deliveries,
            lock_file=lock_file,
        )
    except RepairAlreadyRunningError as e:
        logger.warning("Integrity check refused: %s", e.message)
        raise HTTPException(status_code=409, detail={"code": "INTEGRITY_RUN_IN_PROGRESS", "message": e.message})
