"""Command-line interface for ufw-blocklist."""

import argparse
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import ConfigManager
from .controller import DetachedSeedLoader, LifecycleController
from .exceptions import BlocklistError
from .fetcher import FeedFetcher
from .ipset import IPSetManager
from .log import setup_logging
from .rules import IPTablesManager

logger = logging.getLogger(__name__)


class CLI:
    """Main CLI application."""

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        ipset_manager: Optional[IPSetManager] = None,
        rule_store: Optional[IPTablesManager] = None,
        fetcher: Optional[FeedFetcher] = None,
        seed_loader: Optional[DetachedSeedLoader] = None,
    ):
        """
        Initialize CLI with optional dependency injection for testing.

        Args:
            config_manager: Configuration manager instance
            ipset_manager: IPset manager instance
            rule_store: iptables manager instance
            fetcher: Feed fetcher instance
            seed_loader: Whitelist seed loader instance
        """
        self.config_manager = config_manager
        self.ipset = ipset_manager
        self.rules = rule_store
        self.fetcher = fetcher
        self.seed_loader = seed_loader

    def create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog="ufw-blocklist",
            description="Keep ufw ipset whitelists and blocklists in sync with their sources",
        )
        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {__version__}",
        )
        parser.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Enable verbose output",
        )
        parser.add_argument(
            "--config",
            help="Main configuration file",
        )
        parser.add_argument(
            "--config-dir",
            help="Directory of additional *.conf files",
        )

        subparsers = parser.add_subparsers(dest="command", help="Commands")

        for action, help_text in (
            ("start", "Create sets and install rules (ufw after.init)"),
            ("stop", "Remove rules and destroy sets (ufw after.init)"),
            ("status", "Show sets, seed files, rule counters and log entries"),
            ("flush-all", "Empty sets and reset rule counters"),
            ("update", "Refresh blocklists from their feeds (run periodically)"),
            ("load-seed", "Publish a list's seed file into its set"),
        ):
            sub = subparsers.add_parser(action, help=help_text)
            sub.add_argument(
                "--list",
                dest="name",
                required=action == "load-seed",
                help="Only act on this list (default: all lists)",
            )

        return parser

    def _config_args(self, args: argparse.Namespace) -> List[str]:
        config_args = []
        if args.config:
            config_args += ["--config", args.config]
        if args.config_dir:
            config_args += ["--config-dir", args.config_dir]
        return config_args

    def build_controller(self, args: argparse.Namespace) -> LifecycleController:
        """Load the configuration and wire up a controller for this invocation."""
        config_manager = self.config_manager or ConfigManager(args.config, args.config_dir)
        config = config_manager.load()
        return LifecycleController(
            config,
            ipset_manager=self.ipset,
            rule_store=self.rules,
            fetcher=self.fetcher,
            seed_loader=self.seed_loader or DetachedSeedLoader(self._config_args(args)),
        )

    def cmd_update(self, controller: LifecycleController, args: argparse.Namespace) -> int:
        """Handle update command (used by the periodic job)."""
        return controller.update(args.name)

    def cmd_load_seed(self, controller: LifecycleController, args: argparse.Namespace) -> int:
        """Handle load-seed command (spawned detached by start)."""
        definition = controller.config.get(args.name)
        count = controller.load_seed(definition)
        logger.info("Loaded %d entries into %s", count, definition.set_name)
        return 0

    def run(self, argv: Optional[List[str]] = None) -> int:
        """
        Main entry point.

        Args:
            argv: Command line arguments (defaults to sys.argv[1:])

        Returns:
            Exit code
        """
        parser = self.create_parser()
        args = parser.parse_args(argv)

        setup_logging(args.verbose)

        if not args.command:
            parser.print_help()
            return 1

        try:
            controller = self.build_controller(args)
            if args.command in LifecycleController.ACTIONS:
                return controller.dispatch(args.command, args.name)

            handler = getattr(self, f"cmd_{args.command.replace('-', '_')}", None)
            if handler is None:
                print(f"Unknown command: {args.command}", file=sys.stderr)
                return 1
            return handler(controller, args)
        except BlocklistError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the CLI."""
    cli = CLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
