"""
Command line entry point

Usage:
    crmpulse-sync --client=ucsp --mode=incremental
    crmpulse-sync --client=ucsp --mode=full
"""
import argparse
import asyncio
import sys
from typing import List, Optional

from crmpulse.config import Settings, get_settings, load_client_config
from crmpulse.connectors.crm_client import CrmClient
from crmpulse.connectors.errors import CrmSyncError
from crmpulse.models.snapshot import MODE_FULL, MODE_INCREMENTAL
from crmpulse.services.sync_orchestrator import SyncOrchestrator, SyncOutcome
from crmpulse.utils.logger import log

DEFAULT_CLIENT = "ucsp"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crmpulse-sync",
        description="Sync CRM contacts, deals and campaigns into the analytics snapshot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Modes:
  incremental - Refresh the last days and merge into latest.json (default).
                Falls back to full when no valid snapshot exists.
  full        - Rebuild over the client's whole lookback horizon

Examples:
  crmpulse-sync --client=ucsp
  crmpulse-sync --client=ucsp --mode=full
"""
    )
    parser.add_argument(
        "--client", type=str, default=DEFAULT_CLIENT,
        help=f"Client id, reads config/<client>.json (default: {DEFAULT_CLIENT})"
    )
    parser.add_argument(
        "--mode", type=str, default=MODE_INCREMENTAL,
        choices=[MODE_FULL, MODE_INCREMENTAL],
        help="Sync mode (default: incremental)"
    )
    return parser


async def run_sync(client_id: str, mode: str, settings: Optional[Settings] = None) -> SyncOutcome:
    """Load the client config, open the API client and run one sync"""
    settings = settings or get_settings()
    client_config = load_client_config(client_id, settings.client_config_dir)

    async with CrmClient.from_settings(settings) as client:
        orchestrator = SyncOrchestrator.from_settings(client, client_config, settings)
        return await orchestrator.run(mode)


def _log_summary(outcome: SyncOutcome):
    snapshot = outcome.snapshot
    log.info("Summary:")
    log.info(f"   Mode: {snapshot.metadata.mode}")
    log.info(f"   Contacts: {snapshot.contacts.get('total', 0)}")
    log.info(f"   Deals: {snapshot.deals.get('total', 0)}")
    log.info(f"   Pipelines: {len(snapshot.pipelines)}")
    log.info(f"   Campaigns: {snapshot.campaigns.get('total', 0)}")
    log.info(f"   Win rate: {snapshot.deals.get('win_rate', 0)}%")
    if outcome.coverage_gaps:
        log.warning(f"   Completed with reduced coverage ({len(outcome.coverage_gaps)} gaps)")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        outcome = asyncio.run(run_sync(args.client, args.mode))
    except CrmSyncError as e:
        log.error(f"CRM sync failed: {e}")
        return 1

    _log_summary(outcome)
    return 0


if __name__ == "__main__":
    sys.exit(main())
