"""Command line entry point.

    vsharness install|uninstall|status   manage the agent on a running VM
    vsharness run [pytest args...]       provision a VM and run tests on it
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from vsharness.agent_manager import AgentManager
from vsharness.config import settings
from vsharness.errors import HarnessError
from vsharness.logging_config import setup_logging
from vsharness.orchestrator import Orchestrator, SessionOptions, pytest_body
from vsharness.remote import ConnectionParams

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vsharness",
        description="Manage a disposable SONiC VS and the Hedgehog agent on it.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_ssh_options(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--ssh", default=f"localhost:{settings.ssh_port}", help="SSH address of SONiC VM",
        )
        p.add_argument("--user", default=settings.ssh_username, help="SSH username")
        p.add_argument("--key", default=settings.ssh_key_path, help="Path to SSH private key")

    p_install = sub.add_parser("install", help="Install agent on SONiC VM")
    add_ssh_options(p_install)
    p_install.add_argument("--binary", default=settings.agent_binary, help="Path to agent binary")

    p_uninstall = sub.add_parser("uninstall", help="Uninstall agent from SONiC VM")
    add_ssh_options(p_uninstall)

    p_status = sub.add_parser("status", help="Show agent installation status")
    add_ssh_options(p_status)
    p_status.add_argument("--json", action="store_true", help="Print status as JSON")

    p_run = sub.add_parser("run", help="Boot a VM, install the agent and run tests")
    p_run.add_argument("--agent-binary", default=settings.agent_binary, help="Path to agent binary")
    p_run.add_argument("--cache-dir", default=settings.image_dir, help="Directory with VM images")
    p_run.add_argument(
        "--keep-on-failure", action="store_true", help="Keep VM running on test failure",
    )
    p_run.add_argument(
        "--no-build", dest="build_agent", action="store_false",
        help="Do not build the agent binary before tests",
    )
    p_run.add_argument("pytest_args", nargs=argparse.REMAINDER, help="Arguments passed to pytest")

    return parser


def _manager(args: argparse.Namespace) -> AgentManager:
    if not Path(args.key).is_file():
        raise SystemExit(
            f"\nERROR: SSH key not found at {args.key}\n"
            "Specify the path to your SSH key with --key"
        )
    try:
        params = ConnectionParams.from_address(
            args.ssh,
            username=args.user,
            key_path=args.key,
            connect_timeout=settings.ssh_connect_timeout,
            command_timeout=settings.ssh_command_timeout,
        )
    except ValueError as e:
        raise SystemExit(f"\nERROR: {e}")
    return AgentManager.from_params(params)


async def _install(args: argparse.Namespace) -> int:
    if not Path(args.binary).is_file():
        logger.error(f"Agent binary not found: {args.binary}")
        print(
            f"\nERROR: Agent binary not found at {args.binary}\n\n"
            f"Build the agent first:\n  cd {settings.fabric_root}\n  {settings.build_command}",
            file=sys.stderr,
        )
        return 1

    mgr = _manager(args)
    logger.info(f"Installing Hedgehog agent on {args.ssh} from {args.binary}")
    await mgr.install(args.binary)

    status = await mgr.get_status()
    logger.info(f"Installation complete: {status.describe()}")
    print("\nSUCCESS: Agent successfully installed on SONiC VM")
    print(f"\nAgent status: {status.describe()}")
    print("\nYou can now:")
    print(f"  - Check logs: ssh -i {args.key} {args.user}@{args.ssh} 'tail -f /var/log/agent.log'")
    print(f"  - Check status: vsharness status --ssh {args.ssh}")
    print(f"  - Uninstall:  vsharness uninstall --ssh {args.ssh}")
    return 0


async def _uninstall(args: argparse.Namespace) -> int:
    mgr = _manager(args)
    logger.info(f"Uninstalling Hedgehog agent from {args.ssh}")
    await mgr.uninstall()

    status = await mgr.get_status()
    if status.installed:
        logger.error(f"Agent still present after uninstall: {status.describe()}")
        return 1
    print("\nSUCCESS: Agent successfully uninstalled from SONiC VM")
    return 0


async def _status(args: argparse.Namespace) -> int:
    status = await _manager(args).get_status()
    if args.json:
        print(status.model_dump_json())
    else:
        print(f"Agent status: {status.describe()}")
    return 0


async def _run(args: argparse.Namespace) -> int:
    options = SessionOptions(
        agent_binary=args.agent_binary,
        image_dir=args.cache_dir,
        build_agent=args.build_agent,
        keep_on_failure=args.keep_on_failure,
    )
    pytest_args = [a for a in args.pytest_args if a != "--"]
    return await Orchestrator(options).run(pytest_body(pytest_args))


COMMANDS = {
    "install": _install,
    "uninstall": _uninstall,
    "status": _status,
    "run": _run,
}


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)

    handler = COMMANDS[args.command]
    try:
        return asyncio.run(handler(args))
    except HarnessError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
