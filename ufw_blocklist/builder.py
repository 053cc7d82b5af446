"""Staging of new set generations for ufw-blocklist."""

import logging
import secrets
from dataclasses import dataclass
from typing import Iterable, Optional

from .constants import TEMP_SUFFIX_BYTES
from .exceptions import StoreError, ValidationError
from .ipset import IPSetManager
from .log import list_logger
from .validator import AddressRecord, unique_records

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagedSet:
    """A fully loaded set generation not yet referenced by any rule."""

    name: str
    target: str
    count: int
    capacity: int


def temp_set_name(target: str) -> str:
    """Fresh, collision-resistant name for a staging set."""
    return f"{target}-{secrets.token_hex(TEMP_SUFFIX_BYTES)}"


class SetBuilder:
    """Builds a complete set generation under a temporary name."""

    def __init__(self, ipset: IPSetManager, warn_on_no_change: bool = True):
        self.ipset = ipset
        self.warn_on_no_change = warn_on_no_change

    def _previous_count(self, target: str) -> int:
        if not self.ipset.exists(target):
            return 0
        return self.ipset.count_entries(target)

    def stage(
        self,
        target: str,
        records: Iterable[AddressRecord],
        headroom: int,
        min_entries: Optional[int] = None,
        warn_unchanged: bool = False,
    ) -> StagedSet:
        """
        Stage a new generation of ``target``.

        Args:
            target: Name of the live set the generation is meant for
            records: Validated records; duplicates are dropped
            headroom: Capacity reserved beyond the record count
            min_entries: Reject generations smaller than this (feed updates)
            warn_unchanged: Warn when the count equals the live set's count

        Returns:
            The staged set

        Raises:
            ValidationError: If fewer than min_entries records were given
            StoreError: If the staging set cannot be created or loaded
        """
        log = list_logger(logger, target)
        records = unique_records(records)
        count = len(records)

        if min_entries is not None and count < min_entries:
            raise ValidationError(
                f"Only {count} valid entries for {target}, minimum is {min_entries}"
            )

        if warn_unchanged and self.warn_on_no_change and count:
            previous = self._previous_count(target)
            if count == previous:
                log.warning("Entry count unchanged at %d, feed may be stale", count)

        name = temp_set_name(target)
        capacity = count + headroom
        if not self.ipset.create(name, capacity):
            raise StoreError(f"Temporary set {name} already exists")

        try:
            self.ipset.load(name, records)
        except Exception:
            self.discard(name)
            raise

        log.debug("Staged %d entries in %s (capacity %d)", count, name, capacity)
        return StagedSet(name=name, target=target, count=count, capacity=capacity)

    def discard(self, name: str) -> None:
        """Best-effort removal of a staging set."""
        try:
            self.ipset.destroy(name)
        except StoreError as e:
            logger.warning("Could not remove staging set %s: %s", name, e)
