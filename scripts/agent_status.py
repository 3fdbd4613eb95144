"""
Agent Status CLI

Prints a node agent's status surface.

Usage:
    python scripts/agent_status.py --url http://127.0.0.1:8010
    python scripts/agent_status.py mounts
    python scripts/agent_status.py workload web-1
    python scripts/agent_status.py validate /data/a --type DirectoryOrCreate
"""

import argparse
import json
import os
import sys

import requests

# Add project root to Python path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from hostvol import config
from shared.agent_client import AgentClient


def print_summary(client: AgentClient) -> None:
    status = client.get_status()
    print("=" * 60)
    print(f"Node: {status.get('node')}  status={status.get('status')}")
    print("=" * 60)
    print(f"Mounts: {status.get('mounts', 0)} (degraded: {status.get('degraded_mounts', 0)})")
    print(f"Backends: {status.get('backends', 0)}")
    print(f"Blocking calls in flight: {status.get('in_flight_calls', 0)}, anomalies: {status.get('anomalies', 0)}")
    for phase, count in sorted(status.get("workloads", {}).items()):
        print(f"  {phase}: {count}")


def print_mounts(client: AgentClient) -> None:
    mounts = client.get_mounts()
    if not mounts:
        print("No bound mounts")
        return
    for m in mounts:
        print(
            f"{m['node']}:{m['host_path']} [{m['resolved_kind']}] {m['state']} "
            f"ref_count={m['ref_count']} workloads={','.join(m['workload_ids'])}"
        )


def print_backends(client: AgentClient) -> None:
    backends = client.get_backends()
    for b in backends["registered"]:
        print(f"registered {b['backend_id']} at {b['socket_path']} capabilities={b['capabilities']}")
    for c in backends["candidates"]:
        print(f"candidate {c['socket_path']} state={c['state']} missed={c['missed_heartbeats']}")
    for r in backends["rejected"]:
        print(f"rejected {r['socket_path']}: {r['reason']}")


def main():
    parser = argparse.ArgumentParser(description="Show hostvol node agent status")
    parser.add_argument(
        "--url",
        default=f"http://127.0.0.1:{config.API_PORT}",
        help="Agent base URL"
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("summary")
    sub.add_parser("mounts")
    sub.add_parser("backends")
    sub.add_parser("anomalies")
    workload = sub.add_parser("workload")
    workload.add_argument("workload_id")
    validate = sub.add_parser("validate")
    validate.add_argument("path")
    validate.add_argument("--type", default="Unset")
    args = parser.parse_args()

    client = AgentClient(args.url)
    try:
        if args.command in (None, "summary"):
            print_summary(client)
        elif args.command == "mounts":
            print_mounts(client)
        elif args.command == "backends":
            print_backends(client)
        elif args.command == "anomalies":
            print(json.dumps(client.get_anomalies(), indent=2))
        elif args.command == "workload":
            print(json.dumps(client.get_binding(args.workload_id), indent=2))
        elif args.command == "validate":
            print(json.dumps(client.validate_path(args.path, args.type), indent=2))
    except requests.RequestException as e:
        print(f"Agent request failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
