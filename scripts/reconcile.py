#!/usr/bin/env python3
"""Settlement Reconciliation Script.

Lists settlements whose tokens were issued on Solana but never burned on
Ethereum, and optionally retries the burn for them. Settlements that were
registered but never recorded as issued are listed as in doubt.

Usage:
    python scripts/reconcile.py [--fix] [--include-issue-failed]

Options:
    --fix                   Retry the Ethereum burn for resumable settlements
    --dry-run               Show what would be done without making changes
    --include-issue-failed  Also list settlements whose Solana migrate failed
    --max-attempts N        Burn attempts allowed per settlement (default: 5)
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv

from voip_relayer.config import get_settings
from voip_relayer.handles import build_handles, load_admin_identities
from voip_relayer.ledger.database import close_db, get_db, init_db
from voip_relayer.ledger.models import IN_DOUBT_STATUSES, RESUMABLE_STATUSES, SettlementStatus
from voip_relayer.ledger.repository import SettlementRepository
from voip_relayer.settlement.orchestrator import SettlementOrchestrator

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def list_settlements(statuses) -> list:
    """Load settlements in the given statuses."""
    async with get_db() as session:
        repo = SettlementRepository(session)
        return await repo.get_by_status(statuses, limit=1000)


def describe(record) -> str:
    return (
        f"{record.fingerprint[:16]}... [{record.status}] "
        f"ETH {record.origin_address} -> SOL {record.destination_address}, "
        f"amount {record.amount}, SOL tx {record.issue_signature or '-'}, "
        f"ETH tx {record.finalize_tx_hash or '-'}, attempts {record.finalize_attempts}"
    )


async def resume_burns(max_attempts: int) -> list:
    """Retry phase 2 for every resumable settlement."""
    settings = get_settings()
    admins = load_admin_identities(settings)
    handles = build_handles(settings, admins)
    try:
        orchestrator = SettlementOrchestrator(
            handles.migration,
            handles.bridge,
            db=get_db,
            max_finalize_attempts=max_attempts,
        )
        return await orchestrator.resume_pending(limit=1000)
    finally:
        await handles.close()


async def main():
    parser = argparse.ArgumentParser(description="Settlement Reconciliation")
    parser.add_argument("--fix", action="store_true", help="Retry burns for resumable settlements")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done")
    parser.add_argument(
        "--include-issue-failed",
        action="store_true",
        help="Also list settlements whose migrate failed",
    )
    parser.add_argument("--max-attempts", type=int, default=5, help="Burn attempts per settlement")

    args = parser.parse_args()

    # Initialize database
    await init_db()

    logger.info("=" * 60)
    logger.info("SETTLEMENT RECONCILIATION")
    logger.info("=" * 60)

    if args.dry_run:
        logger.info("DRY RUN MODE - No changes will be made")

    resumable = await list_settlements(RESUMABLE_STATUSES)
    logger.info(f"Issued but not burned: {len(resumable)}")
    for record in resumable:
        logger.info(f"  {describe(record)}")
        if record.error_message:
            logger.info(f"    Last error: {record.error_message}")

    # Registered but never confirmed issued: check the Solana migration account by hand
    in_doubt = await list_settlements(IN_DOUBT_STATUSES)
    logger.info(f"In doubt (migrate outcome unknown): {len(in_doubt)}")
    for record in in_doubt:
        logger.info(f"  {describe(record)}")

    if args.include_issue_failed:
        failed = await list_settlements([SettlementStatus.ISSUE_FAILED])
        logger.info(f"Migrate failed (ETH tokens still locked): {len(failed)}")
        for record in failed:
            logger.info(f"  {describe(record)}")

    if args.fix and not args.dry_run and resumable:
        logger.info(f"Retrying burns for {len(resumable)} settlements...")
        results = await resume_burns(args.max_attempts)

        # Summary
        logger.info("=" * 60)
        logger.info("SUMMARY")
        logger.info("=" * 60)
        for result in results:
            status = "FIXED" if result.success else "FAILED"
            logger.info(
                f"{status}: {result.event.origin_address} -> {result.event.destination_address} "
                f"(ETH tx {result.finalize_tx_hash or '-'})"
            )
            if result.error:
                logger.info(f"  Error: {result.error}")

    await close_db()


if __name__ == "__main__":
    asyncio.run(main())
