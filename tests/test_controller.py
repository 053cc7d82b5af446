"""Tests for controller module."""

import dataclasses
import io
import logging
import os
import stat
import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

from ufw_blocklist.config import Config
from ufw_blocklist.controller import DetachedSeedLoader, LifecycleController
from ufw_blocklist.exceptions import (
    ConfigError,
    TransportError,
    UnsupportedActionError,
    ValidationError,
)
from conftest import FakeSeedLoader, feed_body, write_seed


def make_controller(config, fake_ipset, fake_rules, fake_fetcher):
    return LifecycleController(
        config,
        ipset_manager=fake_ipset,
        rule_store=fake_rules,
        fetcher=fake_fetcher,
        seed_loader=FakeSeedLoader(),
        out=io.StringIO(),
    )


class TestDetachedSeedLoader:
    """Tests for the background whitelist loader."""

    def test_command(self, whitelist):
        """Test the child re-invokes the package with the same configuration."""
        loader = DetachedSeedLoader(["--config", "/tmp/x.conf"])
        assert loader.command(whitelist) == [
            sys.executable, "-m", "ufw_blocklist",
            "--config", "/tmp/x.conf",
            "load-seed", "--list", "ufw-whitelist",
        ]

    @patch("subprocess.Popen")
    def test_spawn_detaches(self, mock_popen, whitelist):
        """Test the child runs in its own session without a return channel."""
        DetachedSeedLoader().spawn(whitelist)

        kwargs = mock_popen.call_args[1]
        assert kwargs["start_new_session"] is True
        assert kwargs["stdout"] == subprocess.DEVNULL
        mock_popen.return_value.wait.assert_not_called()


class TestSeedLoading:
    """Tests for publishing seed files."""

    def test_seed_scenario(self, controller, fake_ipset, blocklist):
        """Test a CIDR and a bare address are published normalized."""
        write_seed(blocklist.seed_file, "10.0.0.0/8\n192.168.1.1\n")

        assert controller.load_seed(blocklist) == 2
        assert fake_ipset.list_entries("ipsum") == ["10.0.0.0/8", "192.168.1.1/32"]

    def test_rejects_reported(self, controller, fake_ipset, blocklist, sample_seed, caplog):
        """Test rejected lines are summarized in one warning."""
        write_seed(blocklist.seed_file, sample_seed)

        with caplog.at_level(logging.WARNING):
            controller.load_seed(blocklist)

        assert fake_ipset.count_entries("ipsum") == 2
        assert "2 entries rejected" in caplog.text
        assert "999.1.1.1" in caplog.text

    def test_missing_seed_gives_empty_set(self, controller, fake_ipset, blocklist, caplog):
        """Test a missing seed file publishes an empty set with headroom."""
        with caplog.at_level(logging.WARNING):
            assert controller.load_seed(blocklist) == 0

        info = fake_ipset.get_info("ipsum")
        assert info["entries"] == 0
        assert info["max_entries"] >= blocklist.headroom
        assert "starting with an empty set" in caplog.text

    def test_insecure_seed_refused(self, controller, fake_ipset, blocklist, caplog):
        """Test a world-readable seed file is not loaded."""
        write_seed(blocklist.seed_file, "1.1.1.1\n")
        os.chmod(blocklist.seed_file, 0o644)

        with caplog.at_level(logging.WARNING):
            assert controller.load_seed(blocklist) == 0

        assert fake_ipset.count_entries("ipsum") == 0
        assert "insecure permissions" in caplog.text


class TestStart:
    """Tests for the start action."""

    def test_start_blocklist(self, controller, fake_ipset, fake_rules, blocklist):
        """Test the set is loaded before rules reference it."""
        write_seed(blocklist.seed_file, "1.1.1.1\n2.2.2.0/24\n")

        controller.start(blocklist)

        assert fake_ipset.get_info("ipsum")["max_entries"] == 52
        for chain in ("ufw-before-input", "ufw-before-output", "ufw-before-forward"):
            assert any(rule.set_name == "ipsum" for rule in fake_rules.rules(chain))

    def test_start_with_zero_prefix_seed(self, controller, fake_ipset, fake_rules, blocklist):
        """Test a /0 seed line is stored as its halves and rules still go in."""
        write_seed(blocklist.seed_file, "0.0.0.0/0\n1.1.1.1\n")

        controller.start(blocklist)

        assert fake_ipset.list_entries("ipsum") == ["0.0.0.0/1", "1.1.1.1/32", "128.0.0.0/1"]
        assert len(fake_rules.tagged("deny:ipsum:input:src")) == 1

    def test_start_whitelist_background(self, controller, fake_ipset, fake_rules, whitelist):
        """Test the whitelist set is created empty and loaded by a detached child."""
        write_seed(whitelist.seed_file, "10.0.0.0/8\n")

        controller.start(whitelist)

        assert fake_ipset.get_info("ufw-whitelist")["max_entries"] == 100
        assert fake_ipset.count_entries("ufw-whitelist") == 0
        assert controller.seed_loader.spawned == [whitelist]
        assert len(fake_rules.tagged("allow:ufw-whitelist:input:src")) == 1
        assert fake_rules.rules("ufw-before-output") == []

        # What the detached child eventually does
        controller.load_seed(whitelist)
        assert fake_ipset.list_entries("ufw-whitelist") == ["10.0.0.0/8"]

    def test_start_whitelist_spawn_failure(self, controller, whitelist, caplog):
        """Test a loader that cannot start leaves an empty whitelist in place."""
        controller.seed_loader.spawn = MagicMock(side_effect=OSError("fork"))

        with caplog.at_level(logging.WARNING):
            controller.start(whitelist)

        assert "Could not start seed loader" in caplog.text

    def test_start_all_whitelist_first(self, controller, fake_rules):
        """Test whitelist rules precede blocklist rules after a full start."""
        assert controller.dispatch("start") == 0

        tags = [rule.tag for rule in fake_rules.rules("ufw-before-input")]
        assert tags[0].startswith("ufw-blocklist:allow:")
        assert tags[1].startswith("ufw-blocklist:deny:")

    def test_restart_without_stop(self, controller, fake_ipset, fake_rules, blocklist):
        """Test starting twice keeps one rule set and the newest seed."""
        write_seed(blocklist.seed_file, "1.1.1.1\n")
        controller.start(blocklist)
        write_seed(blocklist.seed_file, "2.2.2.2\n")
        controller.start(blocklist)

        assert fake_ipset.list_entries("ipsum") == ["2.2.2.2/32"]
        assert len(fake_rules.tagged("deny:ipsum:input:src")) == 1
        assert list(fake_ipset.sets) == ["ipsum"]


class TestStop:
    """Tests for the stop action."""

    def test_stop_after_start(self, controller, fake_ipset, fake_rules):
        """Test stop removes every rule, sub-chain and set."""
        controller.dispatch("start")

        assert controller.dispatch("stop") == 0

        assert fake_ipset.sets == {}
        assert fake_rules.tagged("ufw-blocklist") == []
        assert not fake_rules.chain_exists("ipsum-in")

    def test_stop_without_set(self, controller, fake_ipset, fake_rules):
        """Test stop on lists that were never started succeeds."""
        assert controller.dispatch("stop") == 0

        assert "destroy" not in fake_ipset.calls
        assert all(rule.set_name is None for rule in fake_rules.deletes)

    def test_stop_single_list(self, controller, fake_ipset):
        """Test stop can target one list."""
        controller.dispatch("start")

        controller.dispatch("stop", "ipsum")

        assert list(fake_ipset.sets) == ["ufw-whitelist"]


class TestUpdate:
    """Tests for the feed update path."""

    def test_update_publishes_and_saves_seed(self, controller, fake_ipset, fake_fetcher, blocklist):
        """Test a good feed goes live and becomes the next seed."""
        fake_fetcher.body = feed_body(20)

        assert controller.update() == 0

        assert fake_fetcher.urls == ["https://example.com/ipsum.txt"]
        assert fake_ipset.count_entries("ipsum") == 20
        mode = stat.S_IMODE(os.stat(blocklist.seed_file).st_mode)
        assert mode == 0o600
        assert len(blocklist.seed_file.read_text().splitlines()) == 20

    def test_below_minimum_keeps_prior_set(self, config, fake_ipset, fake_rules, fake_fetcher, blocklist):
        """Test a short feed is rejected and the live set left alone."""
        strict = dataclasses.replace(blocklist, min_entries=1000)
        config = Config(general=config.general, whitelist=None, blocklists=(strict,))
        controller = make_controller(config, fake_ipset, fake_rules, fake_fetcher)
        fake_ipset.create("ipsum", 10)
        fake_ipset.sets["ipsum"]["members"].add("9.9.9.9/32")
        fake_fetcher.body = feed_body(500)

        assert controller.update() == 1

        assert fake_ipset.list_entries("ipsum") == ["9.9.9.9/32"]
        assert list(fake_ipset.sets) == ["ipsum"]
        with pytest.raises(ValidationError, match="minimum is 1000"):
            controller.update_list(strict)

    def test_unchanged_count_warns(self, controller, fake_ipset, fake_fetcher, caplog):
        """Test identical counts warn but the swap still happens."""
        fake_fetcher.body = feed_body(20)
        controller.update()
        fake_fetcher.body = feed_body(20, start=100)

        with caplog.at_level(logging.WARNING):
            assert controller.update() == 0

        assert "unchanged at 20" in caplog.text
        assert "swap" in fake_ipset.calls
        assert "198.0.0.100/32" in fake_ipset.list_entries("ipsum")

    def test_transport_failure(self, controller, fake_ipset, fake_fetcher, caplog):
        """Test a failed fetch is reported and changes nothing."""
        fake_fetcher.error = TransportError("URL error fetching feed")

        with caplog.at_level(logging.ERROR):
            assert controller.update() == 1

        assert fake_ipset.sets == {}
        assert "ufw-blocklist-ipsum" in caplog.text

    def test_update_list_without_feed(self, controller):
        """Test naming a list without a feed is a configuration error."""
        with pytest.raises(ConfigError, match="no feed_url"):
            controller.update("ufw-whitelist")

    def test_whitelist_seed_never_overwritten(self, config, fake_ipset, fake_rules, fake_fetcher, whitelist):
        """Test a whitelist carrying a feed is skipped and its seed left intact."""
        fed = dataclasses.replace(whitelist, feed_url="https://example.com/allow.txt")
        config = Config(general=config.general, whitelist=fed, blocklists=())
        controller = make_controller(config, fake_ipset, fake_rules, fake_fetcher)
        write_seed(fed.seed_file, "10.0.0.0/8\n")
        fake_fetcher.body = feed_body(20)

        assert controller.update() == 0

        assert fake_fetcher.urls == []
        assert fed.seed_file.read_text() == "10.0.0.0/8\n"
        with pytest.raises(ConfigError, match="not a blocklist"):
            controller.update_list(fed)
        assert fake_fetcher.urls == []


class TestFlushAll:
    """Tests for the flush-all action."""

    def test_flush_all(self, controller, fake_ipset, fake_rules, blocklist):
        """Test sets are emptied and counters reset but rules stay."""
        write_seed(blocklist.seed_file, "1.1.1.1\n")
        controller.dispatch("start")
        fake_rules.chains["ipsum-in"][1][1] = 7

        assert controller.dispatch("flush-all") == 0

        assert fake_ipset.count_entries("ipsum") == 0
        assert fake_rules.chains["ipsum-in"][1][1] == 0
        assert len(fake_rules.tagged("deny:ipsum:input:src")) == 1

    def test_flush_all_without_sets(self, controller, fake_ipset):
        """Test flush-all on stopped lists succeeds."""
        assert controller.dispatch("flush-all") == 0
        assert "flush" not in fake_ipset.calls


class TestStatus:
    """Tests for the status action."""

    def test_status_absent(self, controller, fake_ipset, fake_rules):
        """Test status reports missing resources without changing anything."""
        assert controller.dispatch("status") == 0

        out = controller.out.getvalue()
        assert "ufw-whitelist (whitelist)" in out
        assert "ipsum (blocklist)" in out
        assert "set: absent" in out
        assert "rules: absent" in out
        assert "seed file: absent" in out
        assert "recent log entries: none" in out
        assert fake_ipset.calls == []
        assert fake_rules.deletes == []

    def test_status_running(self, controller, blocklist, general):
        """Test status shows set size, rules and log lines of a started list."""
        write_seed(blocklist.seed_file, "1.1.1.1\n2.2.2.2\n")
        controller.start(blocklist)
        general.log_file.write_text(
            "Oct 19 10:00:00 host kernel: [BLOCK ipsum] IN=eth0 SRC=1.1.1.1\n"
            "Oct 19 10:00:01 host kernel: [UFW BLOCK] IN=eth0 SRC=5.5.5.5\n"
        )

        controller.status(blocklist)

        out = controller.out.getvalue()
        assert "set: 2 entries, capacity 52" in out
        assert "2 entries" in out
        assert "ufw-blocklist:deny:ipsum:input:src" in out
        assert "SRC=1.1.1.1" in out
        assert "SRC=5.5.5.5" not in out

    def test_recent_log_entries_limit(self, config, fake_ipset, fake_rules, fake_fetcher, blocklist):
        """Test only the newest matching lines are kept."""
        general = dataclasses.replace(config.general, log_lines=2)
        controller = make_controller(
            dataclasses.replace(config, general=general), fake_ipset, fake_rules, fake_fetcher
        )
        general.log_file.write_text(
            "".join(f"[BLOCK ipsum] SRC=1.1.1.{i}\n" for i in range(5))
        )

        assert controller.recent_log_entries(blocklist) == [
            "[BLOCK ipsum] SRC=1.1.1.3",
            "[BLOCK ipsum] SRC=1.1.1.4",
        ]


class TestDispatch:
    """Tests for action dispatch."""

    def test_unsupported_action(self, controller):
        """Test unknown actions are refused."""
        with pytest.raises(UnsupportedActionError):
            controller.dispatch("restart")

    def test_unknown_list(self, controller):
        """Test naming an unconfigured list."""
        with pytest.raises(ConfigError, match="not found"):
            controller.dispatch("start", "nope")

    def test_failure_isolated_per_list(self, controller, fake_ipset, blocklist):
        """Test one failing list does not stop the others."""
        fake_ipset.fail.add("rename")

        assert controller.dispatch("start") == 1

        assert "ufw-whitelist" in fake_ipset.sets
        assert controller.seed_loader.spawned
