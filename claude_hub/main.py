"""Main entry point - wires the hub components and runs the server."""

import argparse
import asyncio
import logging
import shutil
import sys
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .connection_hub import ConnectionHub
from .models import ActivityStatus
from .process_supervisor import DEFAULT_STRIP_ENV, ProcessEntry, ProcessSupervisor
from .server import create_app
from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "~/.claude-hub/sessions.json"


class StartupError(Exception):
    """Raised when the hub cannot start at all."""


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def resolve_cli(command: str) -> str:
    """
    Locate the wrapped CLI on PATH.

    Raises:
        StartupError: the command cannot be found
    """
    resolved = shutil.which(command)
    if not resolved:
        raise StartupError(f"Could not find '{command}' on PATH. Install it or set cli.command in the config.")
    return resolved


class HubContext:
    """Owns every process-wide component, from startup to shutdown."""

    def __init__(self, config: dict):
        self.config = config

        server_config = config.get("server", {})
        self.host = server_config.get("host", "127.0.0.1")
        self.port = server_config.get("port", 3456)

        cli_config = config.get("cli", {})
        terminal_config = config.get("terminal", {})
        scrollback_config = config.get("scrollback", {})
        self.cli_command = cli_config.get("command", "claude")
        self.shutdown_grace = config.get("shutdown", {}).get("grace_seconds", 3.0)

        self.supervisor = ProcessSupervisor(
            command=self.cli_command,
            strip_env=cli_config.get("strip_env", DEFAULT_STRIP_ENV),
            term=cli_config.get("term", "xterm-256color"),
            idle_timeout=config.get("monitor", {}).get("idle_timeout", 3.0),
            scrollback_max_bytes=scrollback_config.get("max_bytes", 100_000),
            scrollback_trim_to=scrollback_config.get("trim_to", 80_000),
            default_cols=terminal_config.get("default_cols", 120),
            default_rows=terminal_config.get("default_rows", 40),
        )

        self.registry = SessionRegistry(
            state_file=config.get("paths", {}).get("state_file", DEFAULT_STATE_FILE),
            supervisor=self.supervisor,
            snapshot_interval=config.get("persistence", {}).get("snapshot_interval", 30),
        )

        self.hub = ConnectionHub(self.supervisor)

        # Output -> scrollback/monitor happen inside the entry; fan-out here
        self.supervisor.set_output_callback(self.hub.publish_output)
        self.supervisor.set_status_callback(self._handle_status_change)
        self.supervisor.set_exit_callback(self._handle_exit)

        self.app = create_app(
            registry=self.registry,
            supervisor=self.supervisor,
            hub=self.hub,
            config=config,
        )

    def _handle_status_change(self, entry: ProcessEntry, status: ActivityStatus):
        """Broadcast a status transition and record session activity."""
        self.hub.publish_status(entry, status)
        self.registry.touch(entry.session_id)

    def _handle_exit(self, entry: ProcessEntry, exit_code: int):
        logger.info(
            f"Session {entry.session_id} ended with code {exit_code}; "
            f"{len(entry.connections)} viewers still attached"
        )

    async def start(self):
        """Start all components and serve until uvicorn exits."""
        logger.info("Starting Claude Hub...")

        cli_path = resolve_cli(self.cli_command)
        logger.info(f"Using CLI at {cli_path}")

        self.registry.start_snapshots()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Claude Hub running at http://{self.host}:{self.port}")

        # uvicorn handles SIGINT/SIGTERM and returns from serve()
        await server.serve()

    async def stop(self):
        """Terminate every live process and persist final metadata."""
        logger.info("Shutting down Claude Hub...")

        await self.registry.stop_snapshots()
        await self.supervisor.shutdown(grace=self.shutdown_grace)

        # Touches from the final exits land in this write
        self.registry.snapshot()

        logger.info("Shutdown complete")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="claude-hub",
        description="Serve Claude CLI sessions to browser viewers",
    )
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    parser.add_argument("--host", help="Override server.host")
    parser.add_argument("--port", type=int, help="Override server.port")
    return parser.parse_args(argv)


async def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    args = parse_args(argv)
    config = load_config(args.config)
    server_config = config.setdefault("server", {})
    if args.host:
        server_config["host"] = args.host
    if args.port:
        server_config["port"] = args.port

    context = HubContext(config)
    try:
        await context.start()
    except StartupError as e:
        logger.critical(str(e))
        return 1
    finally:
        await context.stop()
    return 0


def run():
    """Entry point for console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
