"""Keep ufw ipset whitelists and blocklists in sync with local and remote sources."""

__version__ = "1.0.0"
