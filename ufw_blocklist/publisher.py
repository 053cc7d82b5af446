"""Atomic publication of staged set generations."""

import logging

from .builder import StagedSet
from .exceptions import StoreError
from .ipset import IPSetManager
from .log import list_logger

logger = logging.getLogger(__name__)


class AtomicPublisher:
    """Swaps a staged generation into the live set name."""

    def __init__(self, ipset: IPSetManager):
        self.ipset = ipset

    def publish(self, staged: StagedSet) -> None:
        """
        Make the staged generation live in one atomic step.

        An existing live set is swapped with the staged one and the displaced
        generation destroyed; a missing live set is created by renaming the
        staged one. Rules keep referencing the live name throughout.

        Raises:
            StoreError: If the swap or rename fails; the staged set is
                destroyed and the live set left untouched
        """
        log = list_logger(logger, staged.target)

        try:
            if self.ipset.exists(staged.target):
                self.ipset.swap(staged.name, staged.target)
                swapped = True
            else:
                self.ipset.rename(staged.name, staged.target)
                swapped = False
        except StoreError:
            try:
                self.ipset.destroy(staged.name)
            except StoreError as e:
                log.warning("Could not remove staging set %s: %s", staged.name, e)
            raise

        log.info("Published %d entries (capacity %d)", staged.count, staged.capacity)

        if swapped:
            # The staging name now holds the previous generation
            try:
                self.ipset.destroy(staged.name)
            except StoreError as e:
                log.warning("Could not reclaim previous generation %s: %s", staged.name, e)
