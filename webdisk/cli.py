"""
Command line interface for webdisk
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import __description__, __version__
from .config import ConfigError, PersistenceError, load_config, resolve_config_path
from .main import ListenError, serve, setup_logging
from .models import Config
from .mutator import HOST_KEYS, ConfigMutator
from .supervisor import (
    STOP_TIMEOUT,
    ProcessLifecycleError,
    daemon_status,
    log_file_for,
    run_foreground,
    start_daemon,
    stop_daemon,
)

logger = logging.getLogger(__name__)

COMMANDS = ("start", "stop", "status", "run")

EXAMPLES = """\
examples:
  webdisk                              run in the foreground
  webdisk start | stop | status        manage the background server
  webdisk --host port 8000             change the listening port
  webdisk --host ipv6 no               disable IPv6
  webdisk --webdav true                enable WebDAV
  webdisk --webdav add bob:rw          add a user with a random password
  webdisk --webdav bob:rwx secret      set permissions and password
  webdisk --webdav del bob             delete a user
  webdisk --config default             restore the default configuration
"""


class CliError(Exception):
    """Invalid command line usage"""
    pass


class CliParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on usage errors"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = CliParser(
        prog="webdisk",
        description=__description__,
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--version", action="version", version=f"webdisk {__version__}")
    parser.add_argument(
        "--config", "-c", metavar="PATH",
        help="configuration file to use, or 'default' to restore the defaults",
    )
    parser.add_argument(
        "--host", nargs=2, metavar=("KEY", "VALUE"),
        help=f"change a listener setting ({', '.join(HOST_KEYS)})",
    )
    parser.add_argument(
        "--webdav", nargs="*", metavar="ARG",
        help="show or change WebDAV settings and users",
    )
    parser.add_argument("-y", "--yes", action="store_true", help="do not ask for confirmation")
    parser.add_argument("command", nargs="?", choices=COMMANDS, help="server lifecycle command")
    return parser


def setup_cli_logging():
    """Warnings to stderr for invocations that do not serve"""
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr, format="%(levelname)s: %(message)s")


def confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def print_summary(config: Config, config_path: Path):
    print(f"Configuration: {config_path}")
    print(f"  ip:      {config.ip}")
    print(f"  ipv6:    {config.ipv6 or 'disabled'}")
    print(f"  port:    {config.port}")
    print(f"  cwd:     {config.cwd} ({config.storage_root})")
    print(f"  webdav:  {'enabled' if config.webdav.enabled else 'disabled'}, "
          f"{len(config.webdav.users)} users")


def print_webdav(config: Config):
    print(f"WebDAV: {'enabled' if config.webdav.enabled else 'disabled'}")
    if not config.webdav.users:
        print("  no users")
    for name, user in sorted(config.webdav.users.items()):
        print(f"  {name:<16} {user.permission_string or '-'}")


def parse_user_arg(arg: str):
    """Split ``user[:perm]`` into (name, permissions or None)"""
    name, sep, permissions = arg.partition(":")
    return name, (permissions if sep else None)


def run_webdav(mutator: ConfigMutator, args: List[str]) -> int:
    if not args:
        print_webdav(mutator.load())
        return 0

    head = args[0]

    if len(args) == 1 and head.lower() in ("true", "false"):
        enabled = head.lower() == "true"
        mutator.set_webdav_enabled(enabled)
        print(f"WebDAV {'enabled' if enabled else 'disabled'}")
        return 0

    if head == "add" and len(args) in (2, 3):
        name, permissions = parse_user_arg(args[1])
        password = args[2] if len(args) == 3 else None
        user = mutator.add_user(name, permissions, password)
        print(f"Added user {user.name} with permissions {user.permission_string or '-'}")
        if password is None:
            print(f"Generated password: {user.password}")
        return 0

    if head == "del" and len(args) == 2:
        mutator.delete_user(args[1])
        print(f"Deleted user {args[1]}")
        return 0

    if ":" in head and len(args) in (1, 2):
        name, permissions = parse_user_arg(head)
        user = mutator.set_user(name, permissions, args[1] if len(args) == 2 else None)
        print(f"User {user.name} now has permissions {user.permission_string or '-'}")
        return 0

    if len(args) == 2:
        mutator.set_password(head, args[1])
        print(f"Password changed for user {head}")
        return 0

    raise CliError(f"Unrecognized --webdav arguments: {' '.join(args)}")


def run_command(command: Optional[str], config_path: Path) -> int:
    if command == "start":
        # Validate in the foreground so errors are not buried in the log
        load_config(config_path, create_missing=True)
        handle = start_daemon(config_path)
        print(f"webdisk started (pid {handle.pid}), output in {log_file_for(config_path)}")
        return 0

    if command == "stop":
        forced = stop_daemon(config_path)
        if forced:
            print(f"webdisk stopped (killed after {STOP_TIMEOUT:g}s)")
        else:
            print("webdisk stopped")
        return 0

    if command == "status":
        handle = daemon_status(config_path)
        if handle is None:
            print("webdisk is not running")
            return 1
        print(f"webdisk is running (pid {handle.pid})")
        return 0

    config = load_config(config_path, create_missing=True)
    setup_logging(config)
    run_foreground(config_path, lambda: serve(config))
    return 0


def dispatch(args: argparse.Namespace) -> int:
    reset = args.config == "default"
    directives = [
        name for name, given in (
            ("--host", args.host is not None),
            ("--webdav", args.webdav is not None),
            ("--config default", reset),
        ) if given
    ]
    if len(directives) > 1:
        raise CliError(f"Use only one of {', '.join(directives)} at a time")
    if directives and args.command:
        raise CliError(f"{directives[0]} cannot be combined with '{args.command}'")

    config_path = resolve_config_path(args.config)
    mutator = ConfigMutator(config_path)

    if reset:
        if config_path.exists() and not args.yes and not confirm(
            f"Overwrite {config_path} with the default configuration?"
        ):
            print("Aborted")
            return 1
        mutator.reset_default()
        print(f"Default configuration written to {config_path}")
        return 0

    if args.host is not None:
        key, value = args.host
        config = mutator.set_host(key, value)
        print(f"{key.lower()} set to {getattr(config, key.lower()) or 'disabled'}")
        return 0

    if args.webdav is not None:
        return run_webdav(mutator, args.webdav)

    if args.config and not args.command:
        print_summary(load_config(config_path, create_missing=True), config_path)
        return 0

    return run_command(args.command, config_path)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point; returns the process exit status"""
    args = build_parser().parse_args(argv)
    setup_cli_logging()

    try:
        return dispatch(args)
    except CliError as e:
        print(f"webdisk: error: {e}", file=sys.stderr)
        return 1
    except (ConfigError, PersistenceError, ProcessLifecycleError, ListenError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
