"""
Attendance Bridge - Main Entry Point
Access-control terminal -> bridge -> cloud attendance service
"""

import argparse
import asyncio
import signal
import sys
import logging
import os

from bridge_errors import BridgeError
from config_loader import load_config, setup_logging
from services.attendance_bridge import AttendanceBridge

logger = logging.getLogger(__name__)

# Strong references to shutdown tasks spawned from signal handlers
_background_tasks = set()

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Sync terminal attendance events to the cloud service")
    parser.add_argument(
        '--config',
        default=os.environ.get('CONFIG_FILE', 'config/config.yaml'),
        help="YAML configuration file (default: $CONFIG_FILE or config/config.yaml)"
    )
    parser.add_argument('--once', action='store_true', help="Run a single sync and exit")
    return parser.parse_args(argv)

async def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config)
    logger.info(f"Using configuration file: {args.config}")
    bridge = AttendanceBridge(config, config_path=args.config)

    if args.once:
        try:
            summary = await bridge.run_once()
        except BridgeError as e:
            logger.error(f"Sync failed: {e}")
            return 1
        logger.info(f"Sync complete: {summary.records} record(s) for {summary.date} via {summary.address}")
        return 0

    # Handle graceful shutdown
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, lambda s=signum: _request_shutdown(bridge, s))
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    try:
        await bridge.start()
    except Exception as e:
        logger.error(f"Bridge failed: {e}")
        return 1
    return 0

def _request_shutdown(bridge: AttendanceBridge, signum: int) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(_shutdown(bridge, signum))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task

async def _shutdown(bridge: AttendanceBridge, signum: int):
    logger.info(f"Received signal {signum}, shutting down...")
    await bridge.stop()

def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nBridge stopped by user")
        sys.exit(0)

if __name__ == "__main__":
    run()
