"""Idempotent installation and removal of the filter rules of a list."""

import logging
from typing import List, Tuple

from .config import ListDefinition
from .constants import (
    FALLBACK_CHAINS,
    FALLBACK_MARK,
    HOOK_CHAINS,
    LOG_LIMIT,
    LOG_LIMIT_BURST,
    SUBCHAIN_SUFFIXES,
    TAG_PREFIX,
)
from .exceptions import RuleSyncWarning
from .log import list_logger
from .rules import FilterRule, IPTablesManager, RuleCounter

logger = logging.getLogger(__name__)

ALLOW = "allow"
DENY = "deny"

# Inbound traffic is matched by source, outbound by destination, and
# forwarded traffic in either role.
MATCH_FIELDS = {
    "input": ("src",),
    "output": ("dst",),
    "forward": ("src", "dst"),
}


def rule_tag(definition: ListDefinition, direction: str, suffix: str, fallback: bool) -> str:
    """Stable comment identifying one rule of a list."""
    kind = ALLOW if definition.is_whitelist else DENY
    tag = f"{TAG_PREFIX}:{kind}:{definition.name}:{direction}:{suffix}"
    if fallback:
        tag = f"{tag}:{FALLBACK_MARK}"
    return tag


def tag_prefix(definition: ListDefinition) -> str:
    kind = ALLOW if definition.is_whitelist else DENY
    return f"{TAG_PREFIX}:{kind}:{definition.name}:"


def subchain_name(definition: ListDefinition, direction: str) -> str:
    return f"{definition.name}-{SUBCHAIN_SUFFIXES[direction]}"


class RuleSynchronizer:
    """
    Keeps exactly one set of rules per (list, direction).

    ``install`` always deletes by tag before inserting, from both the
    framework hook chain and the built-in fallback chain, so repeated runs
    and a hook chain that appears or disappears between runs never leave
    duplicates behind.
    """

    def __init__(self, rules: IPTablesManager):
        self.rules = rules

    def _locations(self, direction: str) -> List[Tuple[str, bool]]:
        return [(HOOK_CHAINS[direction], False), (FALLBACK_CHAINS[direction], True)]

    def _set_rules(self, definition: ListDefinition, direction: str, chain: str, fallback: bool) -> List[FilterRule]:
        """Rules that match the list's set, in evaluation order."""
        target = "ACCEPT" if definition.is_whitelist else subchain_name(definition, direction)
        return [
            FilterRule(
                chain=chain,
                target=target,
                tag=rule_tag(definition, direction, field, fallback),
                set_name=definition.set_name,
                match_field=field,
            )
            for field in MATCH_FIELDS[direction]
        ]

    def _only_rule(self, definition: ListDefinition, direction: str, chain: str, fallback: bool) -> FilterRule:
        """Trailing unconditional drop for whitelist-only mode."""
        return FilterRule(
            chain=chain,
            target="DROP",
            tag=rule_tag(definition, direction, "only", fallback),
        )

    def _subchain_rules(self, definition: ListDefinition, direction: str) -> List[FilterRule]:
        chain = subchain_name(definition, direction)
        return [
            FilterRule(
                chain=chain,
                target="LOG",
                tag=rule_tag(definition, direction, "log", False),
                log_prefix=definition.log_prefix,
                limit=LOG_LIMIT,
                limit_burst=LOG_LIMIT_BURST,
            ),
            FilterRule(
                chain=chain,
                target="DROP",
                tag=rule_tag(definition, direction, "drop", False),
            ),
        ]

    def _purge(self, rule: FilterRule, log) -> int:
        """Delete every copy of a rule; finding none is success."""
        removed = 0
        while True:
            try:
                self.rules.delete_rule(rule)
            except RuleSyncWarning as e:
                if not removed:
                    log.debug("%s", e)
                break
            removed += 1
        if removed > 1:
            log.warning("Removed %d duplicate copies of rule %s", removed, rule.tag)
        return removed

    def _delete_tagged(self, definition: ListDefinition, direction: str, set_rules: bool, log) -> None:
        for chain, fallback in self._locations(direction):
            if not self.rules.chain_exists(chain):
                continue
            if set_rules:
                for rule in self._set_rules(definition, direction, chain, fallback):
                    self._purge(rule, log)
            if definition.is_whitelist:
                self._purge(self._only_rule(definition, direction, chain, fallback), log)

    def _insert_position(self, chain: str) -> int:
        """First position after the leading whitelist rules of a chain."""
        position = 1
        for counter in self.rules.list_counters(chain):
            if not (counter.tag or "").startswith(f"{TAG_PREFIX}:{ALLOW}:"):
                break
            position += 1
        return position

    def _recreate_subchain(self, definition: ListDefinition, direction: str) -> None:
        chain = subchain_name(definition, direction)
        if self.rules.chain_exists(chain):
            self.rules.flush_chain(chain)
            self.rules.delete_chain(chain)
        self.rules.create_chain(chain)
        for rule in self._subchain_rules(definition, direction):
            self.rules.append_rule(rule)

    def install(self, definition: ListDefinition, direction: str) -> str:
        """
        Install (or reinstall) the rules of a list for one direction.

        Returns:
            The chain the rules were inserted into

        Raises:
            RuleStoreError: If a rule or chain cannot be created
        """
        log = list_logger(logger, definition.name)
        self._delete_tagged(definition, direction, set_rules=True, log=log)

        chain, fallback = self._locations(direction)[0]
        if not self.rules.chain_exists(chain):
            chain, fallback = self._locations(direction)[1]
            log.info("Chain %s missing, using %s", HOOK_CHAINS[direction], chain)

        set_rules = self._set_rules(definition, direction, chain, fallback)

        if definition.is_whitelist:
            if direction in definition.whitelist_only:
                self.rules.insert_rule(self._only_rule(definition, direction, chain, fallback), 1)
            for rule in reversed(set_rules):
                self.rules.insert_rule(rule, 1)
        else:
            self._recreate_subchain(definition, direction)
            position = self._insert_position(chain)
            for rule in reversed(set_rules):
                self.rules.insert_rule(rule, position)

        log.info("Installed %s rules in %s", direction, chain)
        return chain

    def remove(self, definition: ListDefinition, direction: str, set_exists: bool = True) -> None:
        """
        Remove the rules of a list for one direction.

        Rules can only reference an existing set, so when the set is gone
        only the rules that do not reference it are looked for.
        """
        log = list_logger(logger, definition.name)
        self._delete_tagged(definition, direction, set_rules=set_exists, log=log)

        if not definition.is_whitelist:
            chain = subchain_name(definition, direction)
            if self.rules.chain_exists(chain):
                self.rules.flush_chain(chain)
                self.rules.delete_chain(chain)
                log.debug("Removed chain %s", chain)

    def _chains(self, definition: ListDefinition) -> List[str]:
        chains = []
        for direction in MATCH_FIELDS:
            chains.extend(chain for chain, _ in self._locations(direction))
            if not definition.is_whitelist:
                chains.append(subchain_name(definition, direction))
        return [chain for chain in chains if self.rules.chain_exists(chain)]

    def counters(self, definition: ListDefinition) -> List[RuleCounter]:
        """Counters of every rule tagged for the list. Read-only."""
        prefix = tag_prefix(definition)
        result = []
        for chain in self._chains(definition):
            result.extend(
                counter
                for counter in self.rules.list_counters(chain)
                if (counter.tag or "").startswith(prefix)
            )
        return result

    def zero_counters(self, definition: ListDefinition) -> int:
        """Reset the counters of every rule tagged for the list."""
        counters = self.counters(definition)
        for counter in counters:
            self.rules.zero_counters(counter.chain, counter.num)
        return len(counters)
