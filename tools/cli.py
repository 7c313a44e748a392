#!/usr/bin/env python3
# =============================================================================
# CLI Tool for the Pipeline Notifier
# =============================================================================
# Local invocation harness. Runs the same handler as Lambda, with
# configuration taken from the environment.
#
# Usage:
#   python tools/cli.py '{"source": "aws.codepipeline", ...}'
#   python tools/cli.py --file event.json --pretty
#   cat event.json | python tools/cli.py
# =============================================================================

import argparse
import json
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.app.handler import run_invocation
from src.runtime.config import BridgeConfig
from src.runtime.deps import create_deps
from src.runtime.errors import BridgeError


def read_event(args, stdin=sys.stdin) -> dict:
    if args.file:
        with open(args.file, "r") as f:
            return json.load(f)
    if args.event:
        return json.loads(args.event)
    if not stdin.isatty():
        data = stdin.read()
        if data.strip():
            return json.loads(data)
    raise ValueError("No input event provided via argument, --file or stdin")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Publish a CodePipeline event to MQTT",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
  MQTT_BROKER_HOST, MQTT_TOPIC (required)
  USE_TAILSCALE, TAILSCALE_AUTH_KEY_SECRET_ARN, MQTT_USERNAME_SECRET_ARN, ...
        """
    )
    parser.add_argument("event", nargs="?", help="Event JSON")
    parser.add_argument("--file", "-f", help="JSON file to load the event from")
    parser.add_argument("--pretty", "-p", action="store_true", help="Pretty print output")
    parser.add_argument("--stop-tunnel", action="store_true", help="Stop tailscaled after publishing")
    args = parser.parse_args(argv)

    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

    deps = None
    try:
        event = read_event(args)
        deps = create_deps(BridgeConfig.from_env())
        result = run_invocation(event, deps)
    except (BridgeError, ValueError) as e:
        stage = getattr(e, "stage", "input")
        print(f"Handler failed: stage={stage} reason={e}", file=sys.stderr)
        return 1
    finally:
        if args.stop_tunnel and deps is not None and deps.config.use_tailscale:
            deps.tunnel_client.stop()

    if args.pretty:
        print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    else:
        print(json.dumps(result, ensure_ascii=False, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
