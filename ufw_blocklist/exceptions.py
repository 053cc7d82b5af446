"""Custom exceptions for ufw-blocklist."""


class BlocklistError(Exception):
    """Base exception for all ufw-blocklist errors."""

    pass


class ConfigError(BlocklistError):
    """A required setting is missing or malformed."""

    pass


class InputError(BlocklistError):
    """Seed file missing, unreadable or insecure."""

    pass


class TransportError(BlocklistError):
    """Feed could not be fetched."""

    pass


class ValidationError(BlocklistError):
    """Validation errors for names, URLs and feed contents."""

    pass


class StoreError(BlocklistError):
    """IPset operation errors."""

    pass


class RuleStoreError(StoreError):
    """iptables operation errors."""

    pass


class RuleSyncWarning(BlocklistError):
    """A delete-before-insert found nothing to delete."""

    pass


class UnsupportedActionError(BlocklistError):
    """Action is not one of the lifecycle actions."""

    pass
