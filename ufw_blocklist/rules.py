"""iptables rule store operations for ufw-blocklist."""

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import List, Optional

from .exceptions import RuleStoreError, RuleSyncWarning

logger = logging.getLogger(__name__)

_COMMENT_RE = re.compile(r"/\* (.+?) \*/")

# stderr fragments iptables prints when the rule, chain, target or set is gone
_NOT_FOUND = (
    "does a matching rule exist",
    "No chain/target/match by that name",
    "Couldn't load target",
    "doesn't exist",
    "does not exist",
)


@dataclass(frozen=True)
class FilterRule:
    """A tagged rule, optionally matching a named set in one direction."""

    chain: str
    target: str
    tag: str
    set_name: Optional[str] = None
    match_field: Optional[str] = None
    log_prefix: Optional[str] = None
    limit: Optional[str] = None
    limit_burst: Optional[str] = None

    def to_args(self) -> List[str]:
        """Convert rule to iptables match and target arguments."""
        args = []

        if self.set_name:
            args.extend(["-m", "set", "--match-set", self.set_name, self.match_field or "src"])

        if self.limit:
            args.extend(["-m", "limit", "--limit", self.limit])
            if self.limit_burst:
                args.extend(["--limit-burst", self.limit_burst])

        args.extend(["-m", "comment", "--comment", self.tag])
        args.extend(["-j", self.target])

        if self.log_prefix:
            args.extend(["--log-prefix", self.log_prefix])

        return args


@dataclass(frozen=True)
class RuleCounter:
    """Packet and byte counters of one listed rule."""

    chain: str
    num: int
    packets: int
    bytes: int
    target: str
    tag: Optional[str] = None


class IPTablesManager:
    """Manages the iptables rule store."""

    def __init__(self, iptables_cmd: str = "iptables"):
        """
        Initialize the iptables manager.

        Args:
            iptables_cmd: Path to the iptables command
        """
        self.iptables_cmd = iptables_cmd

    def _run(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        """
        Execute iptables command, waiting for the xtables lock.

        Raises:
            RuleStoreError: If the command fails and check=True
        """
        cmd = [self.iptables_cmd, "-w"] + args
        logger.debug("Running: %s", " ".join(cmd))

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            raise RuleStoreError(f"iptables command not found: {self.iptables_cmd}")
        except Exception as e:
            raise RuleStoreError(f"Failed to run iptables: {e}")

        if check and result.returncode != 0:
            stderr = result.stderr.strip()
            raise RuleStoreError(f"iptables command failed: {stderr}")

        return result

    def chain_exists(self, chain: str) -> bool:
        result = self._run(["-n", "-L", chain], check=False)
        return result.returncode == 0

    def create_chain(self, chain: str) -> None:
        self._run(["-N", chain])
        logger.debug("Created chain %s", chain)

    def flush_chain(self, chain: str) -> None:
        self._run(["-F", chain])

    def delete_chain(self, chain: str) -> None:
        self._run(["-X", chain])
        logger.debug("Deleted chain %s", chain)

    def insert_rule(self, rule: FilterRule, position: int = 1) -> None:
        """
        Insert a rule at a 1-based position of its chain.

        Raises:
            RuleStoreError: If the insert fails
        """
        self._run(["-I", rule.chain, str(position)] + rule.to_args())

    def append_rule(self, rule: FilterRule) -> None:
        self._run(["-A", rule.chain] + rule.to_args())

    def delete_rule(self, rule: FilterRule) -> None:
        """
        Delete one rule matching exactly these arguments.

        Raises:
            RuleSyncWarning: If no such rule (or its chain, set or target) exists
            RuleStoreError: On any other failure
        """
        result = self._run(["-D", rule.chain] + rule.to_args(), check=False)
        if result.returncode == 0:
            return

        stderr = result.stderr.strip()
        if any(fragment in stderr for fragment in _NOT_FOUND):
            raise RuleSyncWarning(f"No rule '{rule.tag}' in {rule.chain}")
        raise RuleStoreError(f"iptables command failed: {stderr}")

    def list_counters(self, chain: str) -> List[RuleCounter]:
        """
        List the rules of a chain with their exact counters.

        Raises:
            RuleStoreError: If the chain cannot be listed
        """
        result = self._run(["-n", "-v", "-x", "--line-numbers", "-L", chain])
        counters = []

        for line in result.stdout.splitlines():
            parts = line.split()
            # Rule lines: num pkts bytes target prot opt in out source destination ...
            if len(parts) < 4 or not parts[0].isdigit():
                continue
            match = _COMMENT_RE.search(line)
            counters.append(
                RuleCounter(
                    chain=chain,
                    num=int(parts[0]),
                    packets=int(parts[1]),
                    bytes=int(parts[2]),
                    target=parts[3],
                    tag=match.group(1) if match else None,
                )
            )

        return counters

    def zero_counters(self, chain: str, num: Optional[int] = None) -> None:
        """Zero the counters of a whole chain, or of one rule in it."""
        args = ["-Z", chain]
        if num is not None:
            args.append(str(num))
        self._run(args)
