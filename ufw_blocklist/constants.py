"""Constants and default values for ufw-blocklist."""

from pathlib import Path

# Paths
CONFIG_DIR = Path("/etc/ufw-blocklist")
CONFIG_FILE = CONFIG_DIR / "ufw-blocklist.conf"
CONFIG_D_DIR = CONFIG_DIR / "conf.d"
DEFAULT_LOG_FILE = Path("/var/log/ufw.log")
SYSLOG_SOCKET = Path("/dev/log")

# Defaults
DEFAULT_TIMEOUT = 30  # HTTP timeout in seconds
DEFAULT_IPSET_TYPE = "hash:net"
DEFAULT_IPSET_FAMILY = "inet"  # IPv4 only
DEFAULT_HASHSIZE = 1024
DEFAULT_WHITELIST_NAME = "ufw-whitelist"
DEFAULT_WHITELIST_HEADROOM = 100
DEFAULT_BLOCKLIST_HEADROOM = 1000
DEFAULT_MIN_ENTRIES = 1000
DEFAULT_REJECT_EXAMPLES = 5
DEFAULT_LOG_LINES = 10
USER_AGENT = "ufw-blocklist"

# Seed files must be owned by this uid with no bits outside SEED_FILE_MODE
SEED_FILE_OWNER = 0
SEED_FILE_MODE = 0o600

# Host framework hook chains, and the built-in chains used when they are missing
HOOK_CHAINS = {
    "input": "ufw-before-input",
    "output": "ufw-before-output",
    "forward": "ufw-before-forward",
}
FALLBACK_CHAINS = {
    "input": "INPUT",
    "output": "OUTPUT",
    "forward": "FORWARD",
}
SUBCHAIN_SUFFIXES = {
    "input": "in",
    "output": "out",
    "forward": "fwd",
}

# Rule tagging
TAG_PREFIX = "ufw-blocklist"
FALLBACK_MARK = "fallback"

# iptables LOG target limits
LOG_LIMIT = "3/min"
LOG_LIMIT_BURST = "10"

# Valid characters for list names (must fit ipset and iptables naming rules)
# - Must start with letter
# - Max 22 characters, leaving room for "-xxxxxxxx" temp suffixes (31 max)
# - Only alphanumeric, underscore, hyphen
LIST_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_-]{0,21}$"
TEMP_SUFFIX_BYTES = 4

# IP list parsing
COMMENT_CHARS = ("#", ";")
CIDR_PATTERN = (
    r"(?<![\d.])(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})(?:/(\d{1,2}))?(?![\d/]|\.\d)"
)

# ipset names (including temporary generations) are capped at 31 characters
SET_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_-]{0,30}$"
