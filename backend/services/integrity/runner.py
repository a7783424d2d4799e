"""
Procurement Workflow Hub - Cascade Integrity Runner

Single-runner wrapper around the checker and the repair job: takes the lock
file, audits, repairs (dry run unless confirmed), re-audits after a LIVE run
and writes the combined JSON report for operator review.
"""

import os
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any

from services.entity_repository import EntityRepository
from services.integrity.checker import CascadeIntegrityChecker
from services.integrity.repair import CascadeRepairJob, RepairMode, LiveRepairNotConfirmedError
from services.workflow_settings import (
    CASCADE_LOCK_FILE,
    CASCADE_REPORT_DIR,
    CASCADE_DELETE_UNBACKED_DELIVERIES,
    CANONICAL_ID_PATTERN,
)

logger = logging.getLogger(__name__)


class RepairAlreadyRunningError(Exception):
    """Another cascade run holds the lock file."""

    def __init__(self, lock_path: str):
        self.message = f"Cascade integrity run already in progress (lock: {lock_path})"
        self.lock_path = lock_path
        super().__init__(self.message)


class RepairLock:
    """
    Exclusive lock file. Creation is atomic (O_CREAT | O_EXCL), so two runners
    can never both hold it.
    """

    def __init__(self, path: str = CASCADE_LOCK_FILE):
        self.path = path
        self._held = False

    def acquire(self):
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise RepairAlreadyRunningError(self.path)
        with os.fdopen(fd, "w") as handle:
            handle.write(json.dumps({
                "pid": os.getpid(),
                "acquired_at": datetime.now(timezone.utc).isoformat(),
            }))
        self._held = True

    def release(self):
        if self._held:
            try:
                os.remove(self.path)
            except FileNotFoundError:
                logger.warning("Lock file %s disappeared before release", self.path)
            self._held = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


async def run_cascade_integrity(
    repository: EntityRepository,
    mode: RepairMode = RepairMode.DRY_RUN,
    confirm_live: bool = False,
    delete_unbacked_deliveries: bool = CASCADE_DELETE_UNBACKED_DELIVERIES,
    repair: bool = True,
    lock_file: Optional[str] = CASCADE_LOCK_FILE,
    canonical_id_pattern: str = CANONICAL_ID_PATTERN
) -> Dict[str, Any]:
    """
    Audit and optionally repair.

    Returns:
        Report with top-level `mode`, one key per check section, the repair
        plan/result under `repair`, a `summary`, and `postRepair` sections
        after a LIVE run.

    Raises:
        LiveRepairNotConfirmedError: LIVE without confirm_live (before any read)
        RepairAlreadyRunningError: lock held by another run
    """
    mode = RepairMode(mode)
    if mode == RepairMode.LIVE and not confirm_live:
        raise LiveRepairNotConfirmedError()

    lock = RepairLock(lock_file) if lock_file else None
    if lock:
        lock.acquire()
    try:
        checker = CascadeIntegrityChecker(repository, canonical_id_pattern=canonical_id_pattern)
        audit = await checker.run()

        report: Dict[str, Any] = {"mode": mode.value}
        report.update(audit.to_dict())

        total_changes = 0
        if repair:
            job = CascadeRepairJob(repository, delete_unbacked_deliveries=delete_unbacked_deliveries)
            result = await job.run(mode, confirm_live=confirm_live)
            report["repair"] = result.to_dict()
            total_changes = result.total_changes

            if mode == RepairMode.LIVE:
                post = await checker.run()
                report["postRepair"] = post.to_dict()

        report["summary"] = {
            "auditStatus": audit.overall_status.value,
            "totalFindings": sum(s.count for s in audit.sections.values()),
            "totalChanges": total_changes,
            "deleteUnbackedDeliveries": delete_unbacked_deliveries,
        }
        return report
    finally:
        if lock:
            lock.release()


def write_report(report: Dict[str, Any], output: Optional[str] = None, report_dir: str = CASCADE_REPORT_DIR) -> str:
    """Write the report as JSON and return its path."""
    if output:
        path = Path(output)
    else:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        path = Path(report_dir) / f"cascade-integrity-{report.get('mode', 'DRY_RUN').lower()}-{stamp}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report, indent=2, default=str))
    logger.info("Cascade integrity report written to %s", path)
    return str(path)
