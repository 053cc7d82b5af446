"""IPset operations for ufw-blocklist."""

import logging
import subprocess
from typing import Iterable, List, Optional

from .constants import DEFAULT_HASHSIZE, DEFAULT_IPSET_FAMILY, DEFAULT_IPSET_TYPE
from .exceptions import StoreError
from .validator import AddressRecord, validate_set_name

logger = logging.getLogger(__name__)


class IPSetManager:
    """Manages Linux ipset operations."""

    def __init__(self, ipset_cmd: str = "ipset"):
        """
        Initialize the IPset manager.

        Args:
            ipset_cmd: Path to the ipset command
        """
        self.ipset_cmd = ipset_cmd

    def _run(
        self,
        args: List[str],
        check: bool = True,
        stdin: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run one ipset invocation.

        Args:
            args: Arguments after the ipset binary
            check: Raise StoreError on a nonzero exit
            stdin: Text fed to the command (``restore`` scripts)

        Raises:
            StoreError: If the binary is missing or, with check, exits nonzero
        """
        cmd = [self.ipset_cmd, *args]
        logger.debug("ipset %s", " ".join(args))

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, input=stdin)
        except FileNotFoundError as e:
            raise StoreError(f"ipset command not found: {self.ipset_cmd}") from e
        except OSError as e:
            raise StoreError(f"Failed to run ipset: {e}") from e

        if check and result.returncode != 0:
            raise StoreError(f"ipset {args[0]} failed: {result.stderr.strip()}")

        return result

    def exists(self, name: str) -> bool:
        """
        Check if ipset exists.

        Args:
            name: The ipset name

        Returns:
            True if the ipset exists
        """
        result = self._run(["list", name, "-n"], check=False)
        return result.returncode == 0

    def create(
        self,
        name: str,
        max_entries: int,
        hashsize: int = DEFAULT_HASHSIZE,
    ) -> bool:
        """
        Create a new IPv4 ipset.

        Args:
            name: The ipset name
            max_entries: Capacity of the set
            hashsize: Initial hash size

        Returns:
            True if created, False if already exists

        Raises:
            StoreError: If creation fails
        """
        validate_set_name(name)

        if self.exists(name):
            return False

        args = [
            "create",
            name,
            DEFAULT_IPSET_TYPE,
            "family",
            DEFAULT_IPSET_FAMILY,
            "hashsize",
            str(hashsize),
            "maxelem",
            str(max(1, max_entries)),
        ]
        self._run(args)
        logger.debug("Created ipset %s (maxelem %d)", name, max_entries)
        return True

    def destroy(self, name: str) -> bool:
        """
        Destroy an ipset.

        Returns:
            True if destroyed, False if didn't exist

        Raises:
            StoreError: If destruction fails
        """
        validate_set_name(name)

        if not self.exists(name):
            return False

        self._run(["destroy", name])
        logger.debug("Destroyed ipset %s", name)
        return True

    def flush(self, name: str) -> None:
        """
        Flush all entries from an ipset.

        Raises:
            StoreError: If flush fails
        """
        validate_set_name(name)
        self._run(["flush", name])
        logger.debug("Flushed ipset %s", name)

    def load(self, name: str, records: Iterable[AddressRecord]) -> int:
        """
        Bulk-load records using restore.

        Args:
            name: The ipset name
            records: Records to add

        Returns:
            Number of records sent

        Raises:
            StoreError: If restore fails
        """
        lines = [f"add {name} {record} -exist" for record in records]
        if not lines:
            return 0

        restore_input = "\n".join(lines) + "\n"

        self._run(["restore"], stdin=restore_input)
        logger.debug("Loaded %d entries into %s", len(lines), name)
        return len(lines)

    def swap(self, first: str, second: str) -> None:
        """
        Atomically exchange two sets.

        Raises:
            StoreError: If either set is missing or the types differ
        """
        validate_set_name(first)
        validate_set_name(second)
        self._run(["swap", first, second])
        logger.debug("Swapped ipsets %s and %s", first, second)

    def rename(self, old: str, new: str) -> None:
        """
        Rename a set; fails if the new name is taken.

        Raises:
            StoreError: If rename fails
        """
        validate_set_name(old)
        validate_set_name(new)
        self._run(["rename", old, new])
        logger.debug("Renamed ipset %s to %s", old, new)

    def list_entries(self, name: str) -> List[str]:
        """
        List all entries in an ipset.

        Raises:
            StoreError: If list fails
        """
        validate_set_name(name)
        result = self._run(["list", name])

        # Parse output - entries are after "Members:" line
        entries = []
        in_members = False

        for line in result.stdout.splitlines():
            if line.startswith("Members:"):
                in_members = True
                continue
            if in_members and line.strip():
                entries.append(line.strip())

        return entries

    def get_info(self, name: str) -> dict:
        """
        Get information about an ipset.

        Returns:
            Dictionary with name, type, family, max_entries and entries

        Raises:
            StoreError: If the ipset doesn't exist
        """
        validate_set_name(name)
        result = self._run(["list", name, "-t"])

        info = {
            "name": name,
            "type": None,
            "family": None,
            "max_entries": 0,
            "entries": 0,
            "references": 0,
        }

        for line in result.stdout.splitlines():
            key, _, value = line.partition(":")
            value = value.strip()
            if key == "Type":
                info["type"] = value
            elif key == "Header":
                # Parse header like: family inet hashsize 1024 maxelem 65536
                parts = value.split()
                for i, part in enumerate(parts[:-1]):
                    if part == "family":
                        info["family"] = parts[i + 1]
                    elif part == "maxelem" and parts[i + 1].isdigit():
                        info["max_entries"] = int(parts[i + 1])
            elif key == "References" and value.isdigit():
                info["references"] = int(value)
            elif key == "Number of entries" and value.isdigit():
                info["entries"] = int(value)

        return info

    def count_entries(self, name: str) -> int:
        """Count entries in an ipset."""
        return self.get_info(name)["entries"]
