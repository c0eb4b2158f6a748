"""
Command line entry point for the indexer process.

Usage: python -m chainequity [run|rescan|status] [options]
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from chainequity.core.config import IndexerConfig
from chainequity.core.errors import IndexerError
from chainequity.core.indexer_service import IndexerService
from chainequity.core.sql_store import SQLStore
from chainequity.utils.log import get_default_logger, set_log_level

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


async def _run(dotenv_path: Optional[str]):
    service = IndexerService.create_instance_from_env(dotenv_path)
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await service.start()
    waiter = asyncio.create_task(service.wait())
    stopper = asyncio.create_task(stop_requested.wait())
    try:
        await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
        await service.close()
    # Re-raises the fatal error of a failed indexer.
    await waiter
    _LOG.info("Indexer stopped at %s", service.status()["checkpoint"])


async def _rescan(
    dotenv_path: Optional[str], from_block: int, to_block: Optional[int]
):
    service = IndexerService.create_instance_from_env(dotenv_path)
    try:
        inserted = await service.indexer.rescan(from_block, to_block)
    finally:
        await service.close()
    print(
        json.dumps({"fromBlock": from_block, "toBlock": to_block, "inserted": inserted})
    )


def _status(dotenv_path: Optional[str]):
    config = IndexerConfig.from_env(dotenv_path)
    store = SQLStore(config.db_url)
    try:
        checkpoint = store.get_checkpoint()
        token = store.get_token_state()
        status = {
            "chainId": store.get_meta("chain_id"),
            "indexerVersion": store.get_meta("indexer_version"),
            "checkpoint": (
                None
                if checkpoint is None
                else {
                    "blockNumber": checkpoint.block_number,
                    "blockHash": checkpoint.block_hash,
                }
            ),
            "transactions": store.query_transactions().total,
            "token": {
                "symbol": token.symbol,
                "transfersRestricted": token.transfers_restricted,
                "splitFactor": token.split_factor,
                "linkedToken": token.linked_token,
                "linkedCapTable": token.linked_cap_table,
            },
        }
    finally:
        store.close()
    print(json.dumps(status, indent=2))


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        prog="chainequity-indexer", description="ChainEquity event indexer"
    )
    parser.add_argument("--env-file", default=".env", help="Path to a .env file")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Indexer commands")
    subparsers.add_parser("run", help="Index and follow the chain until interrupted")
    rescan_parser = subparsers.add_parser(
        "rescan", help="Re-scan indexed blocks and record anything missing"
    )
    rescan_parser.add_argument("--from-block", type=int, required=True)
    rescan_parser.add_argument("--to-block", type=int)
    subparsers.add_parser("status", help="Show the persisted indexer state")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2
    if args.verbose:
        set_log_level(logging.DEBUG)

    try:
        if args.command == "run":
            asyncio.run(_run(args.env_file))
        elif args.command == "rescan":
            asyncio.run(_rescan(args.env_file, args.from_block, args.to_block))
        elif args.command == "status":
            _status(args.env_file)
    except (IndexerError, EnvironmentError) as e:
        _LOG.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
