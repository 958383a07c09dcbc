"""Worker for the berries reconciliation engine.

Runs a Temporal worker per named queue and one for the periodic tasks.
Jobs stay in Temporal while no worker runs and are picked up on start.

Queues:
- sapContactUpdate: business partners into user attributes
- sapDeliveryPlaceUpdate / sapItemGroupUpdate: reference data
- sapContractUpdate / sapContractSapIdUpdate: contracts
- sapContractDeliveredQuantityUpdate: delivered quantities (also periodic)

Run with --queue <name> (repeatable) to run specific queues.
Run with --all to run every queue (the default).
Run with --operation <TYPE> to start one operation, wait for it and exit.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from core.config import ALL_QUEUES, ConfigurationError, load_config
from core.models.operations import OperationType
from core.observability.logging import configure_logging, get_logger
from core.storage.db import init_db
from workers.engine import SyncEngine
from workflows.operations import OPERATION_QUEUES

logger = get_logger(__name__)


async def run_worker(queues: Optional[List[str]] = None, all_queues: bool = False):
    """Run queues and periodic tasks until interrupted.

    Args:
        queues: Queue names to run
        all_queues: If True, run every queue
    """
    config = load_config()
    engine = SyncEngine(config)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # add_signal_handler is not available on Windows event loops
            pass

    try:
        await engine.start(None if all_queues or not queues else queues)
        logger.info("Worker running... (Ctrl+C to stop)")
        await stop.wait()
    finally:
        await engine.stop()


async def run_operation(operation_type: OperationType, timeout: Optional[float] = None) -> int:
    """Start one operation, drain its queue and log the report.

    Returns:
        Process exit code, 1 if any report item failed
    """
    config = load_config()
    engine = SyncEngine(config)
    try:
        await engine.start([OPERATION_QUEUES[operation_type]], with_scheduler=False)
        report = await engine.operations.start_operation(operation_type)
        await engine.queues.drain(timeout)

        summary = engine.operations.get_operation_report(report.id)
        logger.info(
            f"Operation {summary.type.value} {summary.id}: "
            f"{summary.success_count} succeeded, {summary.failed_count} failed, {summary.pending_count} pending"
        )
        for item in engine.operations.list_operation_report_items(report.id):
            if item.completed and not item.success:
                logger.warning(f"Item {item.id}: {item.message}")
        return 1 if summary.failed_count else 0
    finally:
        await engine.stop()


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="Berries ERP reconciliation worker")
    parser.add_argument(
        "--queue", "-q",
        choices=ALL_QUEUES,
        action="append",
        dest="queues",
        help="Queue to run, may be repeated (default: all queues)"
    )
    parser.add_argument(
        "--all", "-a",
        action="store_true",
        dest="all_queues",
        help="Run all queues"
    )
    parser.add_argument(
        "--operation", "-o",
        choices=[t.value for t in OperationType],
        help="Start an operation, wait until its jobs are processed and exit"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for an --operation to finish"
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the database tables and exit"
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Log as JSON lines"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    args = parser.parse_args()
    configure_logging(logging.DEBUG if args.debug else logging.INFO, json_format=args.json_logs)

    try:
        if args.init_db:
            config = load_config()
            init_db(config.db_path)
            logger.info(f"Initialized database {config.db_path}")
            return

        if args.operation:
            sys.exit(asyncio.run(run_operation(OperationType(args.operation), args.timeout)))

        asyncio.run(run_worker(queues=args.queues, all_queues=args.all_queues))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


if __name__ == "__main__":
    main()
