"""
Agent runtime entry point

Usage:
    python -m agent_client --server http://coordinator:8080 --token <registration token>

Every flag has a CCAGENT_* environment default. After the first successful
registration the client_id and credential are kept in the state file and the
registration token is no longer needed.
"""
import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from agent_client.backoff import build_backoff
from agent_client.client import AgentClient
from agent_client.executor import ShellExecutor
from agent_client.supervisor import ReconnectionSupervisor
from config.settings import setup_logging

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise SystemExit(f"{name} must be a number, got {value!r}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ccagent",
        description="Remote command agent: keeps a connection to the command server and runs dispatched commands",
    )
    parser.add_argument(
        "--server",
        default=os.getenv("CCAGENT_SERVER_URL", "http://localhost:8080"),
        help="Command server base URL (env: CCAGENT_SERVER_URL)",
    )
    parser.add_argument(
        "--token",
        default=os.getenv("CCAGENT_REGISTRATION_TOKEN"),
        help="Single-use registration token (env: CCAGENT_REGISTRATION_TOKEN)",
    )
    parser.add_argument(
        "--state-file",
        default=os.getenv("CCAGENT_STATE_FILE", "ccagent_state.json"),
        help="Where client_id and credential are saved (env: CCAGENT_STATE_FILE)",
    )
    parser.add_argument(
        "--hostname",
        default=os.getenv("CCAGENT_HOSTNAME"),
        help="Hostname to report (env: CCAGENT_HOSTNAME, default: this machine)",
    )
    parser.add_argument(
        "--ip",
        default=os.getenv("CCAGENT_IP"),
        help="IP address to report (env: CCAGENT_IP)",
    )
    parser.add_argument(
        "--heartbeat-interval",
        type=float,
        default=_env_float("CCAGENT_HEARTBEAT_INTERVAL", 30.0),
        help="Seconds between heartbeats (env: CCAGENT_HEARTBEAT_INTERVAL)",
    )
    parser.add_argument(
        "--reconnect-delay",
        type=float,
        default=_env_float("CCAGENT_RECONNECT_DELAY", 5.0),
        help="Initial/fixed reconnect delay in seconds (env: CCAGENT_RECONNECT_DELAY)",
    )
    parser.add_argument(
        "--max-reconnect-delay",
        type=float,
        default=_env_float("CCAGENT_MAX_RECONNECT_DELAY", 60.0),
        help="Cap for exponential backoff in seconds (env: CCAGENT_MAX_RECONNECT_DELAY)",
    )
    parser.add_argument(
        "--backoff",
        choices=["exponential", "constant"],
        default=os.getenv("CCAGENT_BACKOFF", "exponential"),
        help="Reconnect backoff policy (env: CCAGENT_BACKOFF)",
    )
    parser.add_argument(
        "--command-timeout",
        type=float,
        default=_env_float("CCAGENT_COMMAND_TIMEOUT", 0),
        help="Kill commands running longer than this many seconds, 0 for no limit (env: CCAGENT_COMMAND_TIMEOUT)",
    )

    args = parser.parse_args(argv)
    if args.heartbeat_interval <= 0:
        parser.error("--heartbeat-interval must be positive")
    if args.reconnect_delay < 0 or args.max_reconnect_delay < 0:
        parser.error("reconnect delays must be >= 0")
    if args.command_timeout < 0:
        parser.error("--command-timeout must be >= 0")
    return args


def build_supervisor(args: argparse.Namespace) -> ReconnectionSupervisor:
    client = AgentClient(
        args.server,
        registration_token=args.token,
        state_file=args.state_file,
        hostname=args.hostname,
        ip=args.ip,
    )
    return ReconnectionSupervisor(
        client,
        ShellExecutor(timeout=args.command_timeout),
        backoff=build_backoff(args.backoff, args.reconnect_delay, args.max_reconnect_delay),
        heartbeat_interval=args.heartbeat_interval,
    )


async def run_agent(args: argparse.Namespace) -> int:
    supervisor = build_supervisor(args)

    if not supervisor.client.is_registered and not args.token:
        logger.error("No saved registration found; pass --token or set CCAGENT_REGISTRATION_TOKEN")
        return 2

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def shutdown_callback():
        logger.info("Received shutdown signal, stopping agent...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_callback)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    logger.info(f"Starting agent (server: {args.server}, backoff: {args.backoff})")
    await supervisor.start()
    try:
        await shutdown_event.wait()
    finally:
        await supervisor.stop()
        await supervisor.client.close()

    logger.info("Agent stopped")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(log_to_file=False)
    try:
        return asyncio.run(run_agent(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
