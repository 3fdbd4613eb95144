"""
Reference Plugin Backend Launcher

Serves identify/heartbeat on <registration-dir>/<backend-id>.sock until
interrupted; the socket is removed on exit.

Usage:
    python scripts/run_backend_plugin.py --backend-id local-disk --capability local-disk
"""

import argparse
import os
import sys
import signal
import time

# Add project root to Python path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from hostvol import config
from hostvol_plugin import PluginSocketServer
from shared.logging_config import setup_logging


def main():
    parser = argparse.ArgumentParser(description="Run the hostvol reference plugin backend")
    parser.add_argument("--backend-id", required=True, help="Backend identifier")
    parser.add_argument(
        "--capability",
        action="append",
        default=[],
        help="Capability token (repeatable)"
    )
    parser.add_argument(
        "--registration-dir",
        default=config.REGISTRATION_DIR,
        help="Directory watched by the node agent (default: $HOSTVOL_REGISTRATION_DIR)"
    )
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    args = parser.parse_args()

    logger = setup_logging("plugin", args.log_level)

    server = PluginSocketServer(args.registration_dir, args.backend_id, args.capability)

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        server.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    server.start()

    # Keep alive
    try:
        while server.running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt, shutting down...")
        server.stop()


if __name__ == "__main__":
    main()
