"""
Node Agent Launcher

Starts the hostvol node agent: plugin registrar, reconciliation loop and the
HTTP API on one node.

Usage:
    python scripts/run_agent_service.py --node worker-1 --port 8010

Environment Variables:
    HOSTVOL_NODE_NAME: Node name (default: hostname)
    HOSTVOL_API_PORT: API port (default: 8010)
    HOSTVOL_BIND_HOST: Bind address (default: 127.0.0.1)
    HOSTVOL_STATE_DIR: State directory holding hostvol.db (default: /var/lib/hostvol)
    HOSTVOL_REGISTRATION_DIR: Plugin socket directory (default: /var/lib/hostvol/plugins_registry)
    HOSTVOL_LOG_LEVEL / HOSTVOL_LOG_FILE: Logging
"""

import argparse
import os
import sys
import signal
from dataclasses import replace

# Add project root to Python path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from hostvol import config
from hostvol.config import AgentSettings, validate_agent_settings
from hostvol.service import NodeAgentService
from shared.logging_config import setup_logging


def main():
    settings = AgentSettings.from_env()

    parser = argparse.ArgumentParser(description="Run hostvol node agent")
    parser.add_argument("--node", default=settings.node_name, help="Node name (default: $HOSTVOL_NODE_NAME or hostname)")
    parser.add_argument("--host", default=settings.host, help="API bind host")
    parser.add_argument("--port", type=int, default=settings.port, help="API port (default: 8010)")
    parser.add_argument("--state-dir", default=settings.state_dir, help="State directory")
    parser.add_argument("--registration-dir", default=settings.registration_dir, help="Plugin registration directory")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Log level (default: INFO)")
    parser.add_argument("--log-file", default=config.LOG_FILE, help="Optional log file")
    args = parser.parse_args()

    logger = setup_logging("agent", args.log_level, args.log_file)

    settings = replace(
        settings,
        node_name=args.node,
        host=args.host,
        port=args.port,
        state_dir=args.state_dir,
        registration_dir=args.registration_dir,
    )
    try:
        validate_agent_settings(settings)
    except ValueError as e:
        logger.error(f"Invalid agent settings: {e}")
        sys.exit(2)

    print("=" * 60)
    print("hostvol Node Agent")
    print("=" * 60)
    print(f"Node: {settings.node_name}")
    print(f"API Address: {settings.host}:{settings.port}")
    print(f"State dir: {settings.state_dir}")
    print(f"Registration dir: {settings.registration_dir}")
    print("=" * 60)

    service = NodeAgentService(settings)

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        service.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service.start()
    service.wait()


if __name__ == "__main__":
    main()
