#!/usr/bin/env python3
"""
Audit (and optionally repair) PR/PO/shipment/GRN/invoice cascade integrity.

Dry run by default. A LIVE run needs both --mode live and --confirm-live.

    python scripts/cascade_integrity.py
    python scripts/cascade_integrity.py --mode live --confirm-live --output report.json
"""

from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import logging
import sys
from motor.motor_asyncio import AsyncIOMotorClient

from services.entity_repository import MongoEntityRepository
from services.integrity.repair import RepairMode, LiveRepairNotConfirmedError
from services.integrity.runner import RepairAlreadyRunningError, run_cascade_integrity, write_report
from services.workflow_settings import (
    MONGO_URL,
    DB_NAME,
    CASCADE_LOCK_FILE,
    CASCADE_DELETE_UNBACKED_DELIVERIES,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("cascade_integrity")

MODES = {"dry-run": RepairMode.DRY_RUN, "live": RepairMode.LIVE}


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Cascade integrity audit and repair")
    parser.add_argument("--mode", choices=sorted(MODES), default="dry-run")
    parser.add_argument("--confirm-live", action="store_true",
                        help="Required to apply changes in live mode")
    parser.add_argument("--delete-unbacked-deliveries", action="store_true",
                        default=CASCADE_DELETE_UNBACKED_DELIVERIES,
                        help="Delete PRs that claim delivery with no shipment record")
    parser.add_argument("--audit-only", action="store_true", help="Skip the repair plan")
    parser.add_argument("--output", help="Report path (default: timestamped file in the report dir)")
    parser.add_argument("--lock-file", default=CASCADE_LOCK_FILE)
    return parser.parse_args(argv)


async def main(args) -> int:
    client = AsyncIOMotorClient(MONGO_URL)
    try:
        repository = MongoEntityRepository(client[DB_NAME], client=client)
        report = await run_cascade_integrity(
            repository,
            mode=MODES[args.mode],
            confirm_live=args.confirm_live,
            delete_unbacked_deliveries=args.delete_unbacked_deliveries,
            repair=not args.audit_only,
            lock_file=args.lock_file,
        )
    except (LiveRepairNotConfirmedError, RepairAlreadyRunningError) as e:
        logger.error(e.message)
        return 2
    finally:
        client.close()

    path = write_report(report, output=args.output)
    summary = report["summary"]
    print(f"Audit status: {summary['auditStatus']}")
    print(f"Findings: {summary['totalFindings']}  Changes: {summary['totalChanges']}")
    print(f"Report: {path}")

    repair = report.get("repair", {})
    if repair.get("summary", {}).get("failed"):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(parse_args())))
