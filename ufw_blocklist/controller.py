"""Lifecycle actions for ufw-blocklist lists."""

import logging
import os
import subprocess
import sys
import tempfile
from collections import deque
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, TextIO

from .builder import SetBuilder
from .config import DIRECTIONS, Config, ListDefinition
from .constants import SEED_FILE_MODE
from .exceptions import BlocklistError, ConfigError, InputError, UnsupportedActionError
from .fetcher import FeedFetcher
from .ipset import IPSetManager
from .log import list_logger
from .publisher import AtomicPublisher
from .rules import IPTablesManager
from .sync import RuleSynchronizer
from .validator import (
    AddressRecord,
    RejectReport,
    RouteChecker,
    parse_records,
    read_seed_file,
    unique_records,
)

logger = logging.getLogger(__name__)


class DetachedSeedLoader:
    """
    Loads a whitelist seed file in a separate, detached process.

    The caller gets no completion status; the set exists but may be
    under-populated until the child finishes.
    """

    def __init__(self, config_args: Sequence[str] = ()):
        """
        Args:
            config_args: Extra CLI arguments selecting the same configuration
        """
        self.config_args = list(config_args)

    def command(self, definition: ListDefinition) -> List[str]:
        return (
            [sys.executable, "-m", "ufw_blocklist"]
            + self.config_args
            + ["load-seed", "--list", definition.name]
        )

    def spawn(self, definition: ListDefinition) -> None:
        subprocess.Popen(
            self.command(definition),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            start_new_session=True,
        )


class LifecycleController:
    """Dispatches lifecycle actions over the configured lists."""

    ACTIONS = ("start", "stop", "status", "flush-all")

    def __init__(
        self,
        config: Config,
        ipset_manager: Optional[IPSetManager] = None,
        rule_store: Optional[IPTablesManager] = None,
        fetcher: Optional[FeedFetcher] = None,
        route_checker: Optional[RouteChecker] = None,
        seed_loader: Optional[DetachedSeedLoader] = None,
        out: Optional[TextIO] = None,
    ):
        """
        Initialize the controller with optional dependency injection for testing.

        Args:
            config: The configuration for this invocation
            ipset_manager: Named set store
            rule_store: Filter rule store
            fetcher: Feed fetcher
            route_checker: Routability check used when a list enables it
            seed_loader: Runs whitelist seed loading detached from start
            out: Stream receiving status text (default: stdout)
        """
        general = config.general
        self.config = config
        self.ipset = ipset_manager or IPSetManager(general.ipset_cmd)
        self.rules = rule_store or IPTablesManager(general.iptables_cmd)
        self.fetcher = fetcher or FeedFetcher(timeout=general.timeout)
        self.route_checker = route_checker or RouteChecker()
        self.seed_loader = seed_loader or DetachedSeedLoader()
        self.out = out or sys.stdout

        self.builder = SetBuilder(self.ipset, warn_on_no_change=general.warn_on_no_change)
        self.publisher = AtomicPublisher(self.ipset)
        self.sync = RuleSynchronizer(self.rules)

        self._actions: Dict[str, Callable[[ListDefinition], None]] = {
            "start": self.start,
            "stop": self.stop,
            "status": self.status,
            "flush-all": self.flush_all,
        }

    def _targets(self, name: Optional[str], reverse: bool = False) -> List[ListDefinition]:
        if name:
            return [self.config.get(name)]
        targets = self.config.lists()
        return list(reversed(targets)) if reverse else targets

    def _run_each(self, handler: Callable[[ListDefinition], None], targets: List[ListDefinition]) -> int:
        status = 0
        for definition in targets:
            try:
                handler(definition)
            except BlocklistError as e:
                list_logger(logger, definition.name).error("%s", e)
                status = 1
        return status

    def dispatch(self, action: str, name: Optional[str] = None) -> int:
        """
        Run a lifecycle action for one list or all of them.

        Blocklists are stopped before the whitelist; everything else runs
        whitelist first.

        Returns:
            Exit status, nonzero if any list failed

        Raises:
            UnsupportedActionError: If the action is unknown
            ConfigError: If the named list is not configured
        """
        handler = self._actions.get(action)
        if handler is None:
            raise UnsupportedActionError(f"Unsupported action: {action}")
        return self._run_each(handler, self._targets(name, reverse=action == "stop"))

    def update(self, name: Optional[str] = None) -> int:
        """Periodic path: refresh every blocklist that has a feed."""
        targets = [d for d in self._targets(name) if d.feed_url and not d.is_whitelist]
        if name and not targets:
            raise ConfigError(f"List '{name}' has no feed_url")
        return self._run_each(self.update_list, targets)

    def _route_checker(self, definition: ListDefinition) -> Optional[RouteChecker]:
        return self.route_checker if definition.route_check else None

    def _validate(self, definition: ListDefinition, content: str) -> List[AddressRecord]:
        log = list_logger(logger, definition.name)
        report = RejectReport(max_examples=self.config.general.reject_examples)
        records = unique_records(
            parse_records(content, report, self._route_checker(definition))
        )
        if report.count:
            log.warning("%s", report.summary())
        return records

    def _seed_records(self, definition: ListDefinition) -> List[AddressRecord]:
        log = list_logger(logger, definition.name)
        try:
            content = read_seed_file(definition.seed_file, self.config.general.seed_owner)
        except InputError as e:
            log.warning("%s; starting with an empty set", e)
            return []
        return self._validate(definition, content)

    def load_seed(self, definition: ListDefinition) -> int:
        """
        Validate the seed file and publish it as the list's set.

        An unusable seed file publishes an empty set.

        Returns:
            Number of entries published
        """
        records = self._seed_records(definition)
        staged = self.builder.stage(definition.set_name, records, definition.headroom)
        self.publisher.publish(staged)
        return staged.count

    def update_list(self, definition: ListDefinition) -> None:
        """
        Fetch, validate and publish a new generation from the feed.

        Raises:
            TransportError: If the feed cannot be fetched
            ConfigError: If the list is the whitelist or has no feed_url
            ValidationError: If the feed has fewer than min_entries records
            StoreError: If staging or publication fails
        """
        log = list_logger(logger, definition.name)
        if definition.is_whitelist or not definition.feed_url:
            raise ConfigError(f"List '{definition.name}' is not a blocklist with a feed_url")
        content = self.fetcher.fetch(definition.feed_url)
        records = self._validate(definition, content)
        staged = self.builder.stage(
            definition.set_name,
            records,
            definition.headroom,
            min_entries=definition.min_entries,
            warn_unchanged=True,
        )
        self.publisher.publish(staged)
        self._save_seed(definition, records)
        log.info("Updated from %s", definition.feed_url)

    def _save_seed(self, definition: ListDefinition, records: List[AddressRecord]) -> None:
        """Keep the published records as the next start's seed file."""
        log = list_logger(logger, definition.name)
        path = Path(definition.seed_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    for record in records:
                        f.write(f"{record}\n")
                os.chmod(tmp, SEED_FILE_MODE)
                os.replace(tmp, path)
            except BaseException:
                os.unlink(tmp)
                raise
        except OSError as e:
            log.warning("Could not save seed file %s: %s", path, e)

    def start(self, definition: ListDefinition) -> None:
        """
        Create the list's set and install its rules.

        The whitelist set is created empty and filled by a detached loader;
        blocklists are loaded from their seed before rules reference them.
        """
        log = list_logger(logger, definition.name)

        if definition.is_whitelist:
            if self.ipset.create(definition.set_name, definition.headroom):
                log.info("Created empty set, capacity %d", definition.headroom)
        else:
            count = self.load_seed(definition)
            log.info("Loaded %d entries from %s", count, definition.seed_file)

        for direction in definition.directions:
            self.sync.install(definition, direction)

        if definition.is_whitelist:
            try:
                self.seed_loader.spawn(definition)
            except OSError as e:
                log.warning("Could not start seed loader: %s", e)
            else:
                log.info("Loading %s in the background", definition.seed_file)

    def stop(self, definition: ListDefinition) -> None:
        """Remove the list's rules and destroy its set, if they exist."""
        log = list_logger(logger, definition.name)
        exists = self.ipset.exists(definition.set_name)

        for direction in DIRECTIONS:
            self.sync.remove(definition, direction, set_exists=exists)

        if exists:
            self.ipset.destroy(definition.set_name)
            log.info("Stopped")
        else:
            log.info("Set does not exist, nothing to destroy")

    def flush_all(self, definition: ListDefinition) -> None:
        """Empty the list's set and reset its rule counters."""
        log = list_logger(logger, definition.name)
        if self.ipset.exists(definition.set_name):
            self.ipset.flush(definition.set_name)
        zeroed = self.sync.zero_counters(definition)
        log.info("Flushed set and reset %d rule counters", zeroed)

    def status(self, definition: ListDefinition) -> None:
        """Print a read-only report; unavailable resources show as absent."""
        print(f"{definition.name} ({definition.kind})", file=self.out)

        try:
            if self.ipset.exists(definition.set_name):
                info = self.ipset.get_info(definition.set_name)
                print(
                    f"  set: {info['entries']} entries, capacity {info['max_entries']}",
                    file=self.out,
                )
            else:
                print("  set: absent", file=self.out)
        except BlocklistError:
            print("  set: absent", file=self.out)

        try:
            content = read_seed_file(definition.seed_file, self.config.general.seed_owner)
            count = len(unique_records(parse_records(content)))
            print(f"  seed file: {definition.seed_file}, {count} entries", file=self.out)
        except InputError as e:
            print(f"  seed file: absent ({e})", file=self.out)

        try:
            counters = self.sync.counters(definition)
        except BlocklistError:
            counters = []
        if counters:
            print("  rules:", file=self.out)
            for counter in counters:
                print(
                    f"    {counter.chain:<20} {counter.target:<12} "
                    f"{counter.packets:>10} pkts {counter.bytes:>12} bytes  {counter.tag}",
                    file=self.out,
                )
        else:
            print("  rules: absent", file=self.out)

        if not definition.is_whitelist:
            entries = self.recent_log_entries(definition)
            print("  recent log entries:" if entries else "  recent log entries: none", file=self.out)
            for line in entries:
                print(f"    {line}", file=self.out)

    def recent_log_entries(self, definition: ListDefinition) -> List[str]:
        """Last log lines written by the list's LOG rule."""
        general = self.config.general
        prefix = definition.log_prefix.strip()
        lines = deque(maxlen=general.log_lines)
        try:
            with open(general.log_file, encoding="utf-8", errors="replace") as f:
                for line in f:
                    if prefix in line:
                        lines.append(line.rstrip("\n"))
        except OSError:
            return []
        return list(lines)
