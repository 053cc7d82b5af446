"""Configuration management for ufw-blocklist."""

import configparser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .constants import (
    CONFIG_D_DIR,
    CONFIG_FILE,
    CONFIG_DIR,
    DEFAULT_BLOCKLIST_HEADROOM,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LINES,
    DEFAULT_MIN_ENTRIES,
    DEFAULT_REJECT_EXAMPLES,
    DEFAULT_TIMEOUT,
    DEFAULT_WHITELIST_HEADROOM,
    DEFAULT_WHITELIST_NAME,
    HOOK_CHAINS,
    SEED_FILE_OWNER,
)
from .exceptions import ConfigError, ValidationError
from .validator import validate_list_name, validate_url

WHITELIST = "whitelist"
BLOCKLIST = "blocklist"
DIRECTIONS = tuple(HOOK_CHAINS)

_TRUE = ("yes", "true", "on", "1")
_FALSE = ("no", "false", "off", "0")


def _parse_bool(data: Dict[str, str], key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    value = value.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for '{key}': {value}")


def _parse_int(data: Dict[str, str], key: str, default: int, minimum: int = 0) -> int:
    value = data.get(key)
    if value is None:
        return default
    try:
        number = int(value)
    except ValueError as e:
        raise ConfigError(f"Invalid integer for '{key}': {value}") from e
    if number < minimum:
        raise ConfigError(f"'{key}' must be at least {minimum}, got {number}")
    return number


@dataclass(frozen=True)
class GeneralConfig:
    """Tunables shared by every list."""

    timeout: int = DEFAULT_TIMEOUT
    route_check: bool = False
    warn_on_no_change: bool = True
    reject_examples: int = DEFAULT_REJECT_EXAMPLES
    log_file: Path = DEFAULT_LOG_FILE
    log_lines: int = DEFAULT_LOG_LINES
    ipset_cmd: str = "ipset"
    iptables_cmd: str = "iptables"
    seed_owner: int = SEED_FILE_OWNER

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "GeneralConfig":
        """Create from a [general] section."""
        return cls(
            timeout=_parse_int(data, "timeout", DEFAULT_TIMEOUT, minimum=1),
            route_check=_parse_bool(data, "route_check", False),
            warn_on_no_change=_parse_bool(data, "warn_on_no_change", True),
            reject_examples=_parse_int(data, "reject_examples", DEFAULT_REJECT_EXAMPLES),
            log_file=Path(data.get("log_file", DEFAULT_LOG_FILE)),
            log_lines=_parse_int(data, "log_lines", DEFAULT_LOG_LINES),
            ipset_cmd=data.get("ipset", "ipset"),
            iptables_cmd=data.get("iptables", "iptables"),
            seed_owner=_parse_int(data, "seed_owner", SEED_FILE_OWNER),
        )


@dataclass(frozen=True)
class ListDefinition:
    """One whitelist or blocklist and the named set it drives."""

    name: str
    kind: str
    seed_file: Path
    feed_url: Optional[str] = None
    min_entries: int = DEFAULT_MIN_ENTRIES
    headroom: int = DEFAULT_BLOCKLIST_HEADROOM
    directions: Tuple[str, ...] = DIRECTIONS
    whitelist_only: Tuple[str, ...] = ()
    route_check: bool = False
    enabled: bool = True

    @property
    def is_whitelist(self) -> bool:
        return self.kind == WHITELIST

    @property
    def set_name(self) -> str:
        return self.name

    @property
    def log_prefix(self) -> str:
        """iptables LOG prefix, kept within the 29 character limit."""
        return f"[BLOCK {self.name[:20]}] "

    @classmethod
    def whitelist_from_dict(cls, data: Dict[str, str], general: GeneralConfig) -> "ListDefinition":
        """Create from a [whitelist] section."""
        name = data.get("set_name", DEFAULT_WHITELIST_NAME)
        seed_file = data.get("seed_file")
        if not seed_file:
            raise ConfigError("Missing seed_file for whitelist")
        if data.get("feed_url"):
            raise ConfigError("The whitelist is loaded from its seed file only; remove feed_url")

        return cls(
            name=name,
            kind=WHITELIST,
            seed_file=Path(seed_file),
            min_entries=0,
            headroom=_parse_int(data, "headroom", DEFAULT_WHITELIST_HEADROOM),
            directions=tuple(
                d for d in DIRECTIONS if _parse_bool(data, d, d == "input")
            ),
            whitelist_only=tuple(
                d for d in DIRECTIONS if _parse_bool(data, f"{d}_only", False)
            ),
            route_check=_parse_bool(data, "route_check", general.route_check),
            enabled=_parse_bool(data, "enabled", True),
        )

    @classmethod
    def blocklist_from_dict(
        cls, name: str, data: Dict[str, str], general: GeneralConfig
    ) -> "ListDefinition":
        """Create from a [list:<name>] section."""
        feed_url = data.get("feed_url")
        if not feed_url:
            raise ConfigError(f"Missing feed_url for list '{name}'")
        validate_url(feed_url)

        return cls(
            name=name,
            kind=BLOCKLIST,
            seed_file=Path(data.get("seed_file", CONFIG_DIR / f"{name}.seed")),
            feed_url=feed_url,
            min_entries=_parse_int(data, "min_entries", DEFAULT_MIN_ENTRIES),
            headroom=_parse_int(data, "headroom", DEFAULT_BLOCKLIST_HEADROOM),
            directions=tuple(d for d in DIRECTIONS if _parse_bool(data, d, True)),
            route_check=_parse_bool(data, "route_check", general.route_check),
            enabled=_parse_bool(data, "enabled", True),
        )


@dataclass(frozen=True)
class Config:
    """Immutable configuration for one invocation."""

    general: GeneralConfig = field(default_factory=GeneralConfig)
    whitelist: Optional[ListDefinition] = None
    blocklists: Tuple[ListDefinition, ...] = ()

    def lists(self) -> List[ListDefinition]:
        """All enabled lists, whitelist first."""
        result = [self.whitelist] if self.whitelist else []
        result.extend(self.blocklists)
        return [definition for definition in result if definition.enabled]

    def get(self, name: str) -> ListDefinition:
        """
        Look up a list by name.

        Raises:
            ConfigError: If no such list is configured
        """
        for definition in ([self.whitelist] if self.whitelist else []) + list(self.blocklists):
            if definition.name == name:
                return definition
        raise ConfigError(f"List '{name}' not found")


class ConfigManager:
    """Loads ufw-blocklist configuration files."""

    def __init__(
        self,
        config_file: Optional[Path] = None,
        config_d_dir: Optional[Path] = None,
    ):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to main config file (default: /etc/ufw-blocklist/ufw-blocklist.conf)
            config_d_dir: Path to conf.d directory (default: /etc/ufw-blocklist/conf.d)
        """
        self.config_file = Path(config_file) if config_file else CONFIG_FILE
        self.config_d_dir = Path(config_d_dir) if config_d_dir else CONFIG_D_DIR

    def files(self) -> List[Path]:
        """Config files in load order; later files override earlier keys."""
        files = []
        if self.config_file.exists():
            files.append(self.config_file)
        if self.config_d_dir.is_dir():
            files.extend(sorted(self.config_d_dir.glob("*.conf")))
        return files

    def load(self) -> Config:
        """
        Load and validate the whole configuration.

        Returns:
            The configuration value

        Raises:
            ConfigError: If a file is unreadable, a setting is missing or
                invalid, or no list is configured
        """
        files = self.files()
        if not files:
            raise ConfigError(f"No configuration found at {self.config_file}")

        parser = configparser.ConfigParser()
        try:
            parser.read(files)
        except configparser.Error as e:
            raise ConfigError(f"Error reading configuration: {e}") from e

        general = GeneralConfig.from_dict(
            dict(parser.items("general")) if parser.has_section("general") else {}
        )

        try:
            whitelist = None
            if parser.has_section(WHITELIST):
                data = dict(parser.items(WHITELIST))
                whitelist = ListDefinition.whitelist_from_dict(data, general)
                validate_list_name(whitelist.name)

            blocklists = []
            for section in parser.sections():
                if section.startswith("list:"):
                    name = section[5:]  # Remove 'list:' prefix
                    validate_list_name(name)
                    data = dict(parser.items(section))
                    blocklists.append(ListDefinition.blocklist_from_dict(name, data, general))
        except ValidationError as e:
            raise ConfigError(str(e)) from e

        names = [d.name for d in blocklists] + ([whitelist.name] if whitelist else [])
        if len(set(names)) != len(names):
            raise ConfigError("List names must be unique")
        if not names:
            raise ConfigError("No lists configured")

        return Config(general=general, whitelist=whitelist, blocklists=tuple(blocklists))
