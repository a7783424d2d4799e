"""
Procurement Workflow Hub - Cascade Integrity

Read-only audit of cross-entity invariants plus the gated repair job.
"""

from .checker import (
    CascadeIntegrityChecker,
    CheckName,
    CheckStatus,
    IntegrityReport,
    IntegrityViolation,
)
from .repair import (
    CascadeRepairJob,
    RepairMode,
    RepairActionType,
    RepairActionStatus,
    LiveRepairNotConfirmedError,
)
from .runner import RepairLock, RepairAlreadyRunningError, run_cascade_integrity, write_report

__all__ = [
    'CascadeIntegrityChecker', 'CheckName', 'CheckStatus', 'IntegrityReport', 'IntegrityViolation',
    'CascadeRepairJob', 'RepairMode', 'RepairActionType', 'RepairActionStatus',
    'LiveRepairNotConfirmedError',
    'RepairLock', 'RepairAlreadyRunningError', 'run_cascade_integrity', 'write_report',
]
