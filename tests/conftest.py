"""Shared pytest fixtures for ufw-blocklist tests."""

import io
import os
import shutil
import tempfile
from pathlib import Path

import pytest

from ufw_blocklist.config import BLOCKLIST, WHITELIST, Config, GeneralConfig, ListDefinition
from ufw_blocklist.controller import LifecycleController
from ufw_blocklist.exceptions import RuleStoreError, RuleSyncWarning, StoreError
from ufw_blocklist.rules import RuleCounter


class FakeIPSet:
    """In-memory stand-in for IPSetManager."""

    def __init__(self):
        self.sets = {}
        self.fail = set()
        self.calls = []

    def _check(self, op):
        self.calls.append(op)
        if op in self.fail:
            raise StoreError(f"{op} failed")

    def exists(self, name):
        return name in self.sets

    def create(self, name, max_entries, hashsize=1024):
        self._check("create")
        if name in self.sets:
            return False
        self.sets[name] = {"members": set(), "maxelem": max_entries}
        return True

    def destroy(self, name):
        self._check("destroy")
        return self.sets.pop(name, None) is not None

    def flush(self, name):
        self._check("flush")
        if name not in self.sets:
            raise StoreError(f"The set with the given name does not exist: {name}")
        self.sets[name]["members"].clear()

    def load(self, name, records):
        self._check("load")
        # hash:net stores the masked network
        members = [str(record.network) for record in records]
        if len(self.sets[name]["members"] | set(members)) > self.sets[name]["maxelem"]:
            raise StoreError("Hash is full")
        self.sets[name]["members"].update(members)
        return len(members)

    def swap(self, first, second):
        self._check("swap")
        if first not in self.sets or second not in self.sets:
            raise StoreError("The set with the given name does not exist")
        self.sets[first], self.sets[second] = self.sets[second], self.sets[first]

    def rename(self, old, new):
        self._check("rename")
        if new in self.sets:
            raise StoreError("A set with the new name already exists")
        self.sets[new] = self.sets.pop(old)

    def list_entries(self, name):
        return sorted(self.sets[name]["members"])

    def get_info(self, name):
        if name not in self.sets:
            raise StoreError(f"The set with the given name does not exist: {name}")
        data = self.sets[name]
        return {
            "name": name,
            "type": "hash:net",
            "family": "inet",
            "max_entries": data["maxelem"],
            "entries": len(data["members"]),
            "references": 0,
        }

    def count_entries(self, name):
        return self.get_info(name)["entries"]


class FakeRules:
    """In-memory stand-in for IPTablesManager."""

    BUILTIN = ("INPUT", "OUTPUT", "FORWARD")
    HOOKS = ("ufw-before-input", "ufw-before-output", "ufw-before-forward")

    def __init__(self, hooks=True):
        self.chains = {name: [] for name in self.BUILTIN}
        if hooks:
            for name in self.HOOKS:
                self.chains[name] = []
        self.zeroed = []
        self.deletes = []

    def chain_exists(self, chain):
        return chain in self.chains

    def create_chain(self, chain):
        if chain in self.chains:
            raise RuleStoreError("Chain already exists.")
        self.chains[chain] = []

    def flush_chain(self, chain):
        self.chains[chain] = []

    def delete_chain(self, chain):
        if self.chains[chain]:
            raise RuleStoreError("Directory not empty.")
        for entries in self.chains.values():
            if any(entry[0].target == chain for entry in entries):
                raise RuleStoreError("Too many links.")
        del self.chains[chain]

    def insert_rule(self, rule, position=1):
        if rule.chain not in self.chains:
            raise RuleStoreError("No chain/target/match by that name.")
        self.chains[rule.chain].insert(position - 1, [rule, 0, 0])

    def append_rule(self, rule):
        self.chains[rule.chain].append([rule, 0, 0])

    def delete_rule(self, rule):
        self.deletes.append(rule)
        entries = self.chains.get(rule.chain, [])
        for index, entry in enumerate(entries):
            if entry[0] == rule:
                del entries[index]
                return
        raise RuleSyncWarning(f"No rule '{rule.tag}' in {rule.chain}")

    def list_counters(self, chain):
        return [
            RuleCounter(
                chain=chain,
                num=index,
                packets=entry[1],
                bytes=entry[2],
                target=entry[0].target,
                tag=entry[0].tag,
            )
            for index, entry in enumerate(self.chains[chain], 1)
        ]

    def zero_counters(self, chain, num=None):
        self.zeroed.append((chain, num))
        entries = self.chains[chain] if num is None else [self.chains[chain][num - 1]]
        for entry in entries:
            entry[1] = entry[2] = 0

    def rules(self, chain):
        return [entry[0] for entry in self.chains[chain]]

    def tagged(self, text):
        return [
            entry[0]
            for entries in self.chains.values()
            for entry in entries
            if text in entry[0].tag
        ]


class FakeFetcher:
    """Returns canned feed bodies."""

    def __init__(self, body=""):
        self.body = body
        self.error = None
        self.urls = []

    def fetch(self, url):
        self.urls.append(url)
        if self.error:
            raise self.error
        return self.body


class FakeSeedLoader:
    """Records spawn requests instead of starting a process."""

    def __init__(self):
        self.spawned = []

    def spawn(self, definition):
        self.spawned.append(definition)


def write_seed(path, content):
    """Write a seed file readable only by its (current) owner."""
    path.write_text(content)
    os.chmod(path, 0o600)
    return path


def feed_body(count, start=0):
    """Feed text with ``count`` distinct single addresses."""
    return "\n".join(
        f"198.{(i >> 16) & 255}.{(i >> 8) & 255}.{i & 255}" for i in range(start, start + count)
    )


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def config_dir(temp_dir):
    """Create a temporary config directory structure."""
    conf_d = temp_dir / "conf.d"
    conf_d.mkdir(parents=True)
    return temp_dir


@pytest.fixture
def fake_ipset():
    return FakeIPSet()


@pytest.fixture
def fake_rules():
    return FakeRules()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def general(temp_dir):
    """General settings accepting seed files owned by the test user."""
    return GeneralConfig(
        log_file=temp_dir / "ufw.log",
        seed_owner=os.getuid(),
    )


@pytest.fixture
def whitelist(temp_dir):
    return ListDefinition(
        name="ufw-whitelist",
        kind=WHITELIST,
        seed_file=temp_dir / "whitelist.seed",
        min_entries=0,
        headroom=100,
        directions=("input",),
    )


@pytest.fixture
def blocklist(temp_dir):
    return ListDefinition(
        name="ipsum",
        kind=BLOCKLIST,
        seed_file=temp_dir / "ipsum.seed",
        feed_url="https://example.com/ipsum.txt",
        min_entries=10,
        headroom=50,
    )


@pytest.fixture
def config(general, whitelist, blocklist):
    return Config(general=general, whitelist=whitelist, blocklists=(blocklist,))


@pytest.fixture
def controller(config, fake_ipset, fake_rules, fake_fetcher):
    """Controller wired to in-memory stores."""
    return LifecycleController(
        config,
        ipset_manager=fake_ipset,
        rule_store=fake_rules,
        fetcher=fake_fetcher,
        seed_loader=FakeSeedLoader(),
        out=io.StringIO(),
    )


@pytest.fixture
def sample_seed():
    """Sample seed file content."""
    return """# Trusted addresses
10.0.0.0/8
192.168.1.1   office gateway

; old entries
999.1.1.1
not an address
"""
