"""Logging setup and the per-list tagged log sink."""

import logging
import logging.handlers

from .constants import SYSLOG_SOCKET, TAG_PREFIX


class ListLogger(logging.LoggerAdapter):
    """Logger adapter that tags every message with the list being processed."""

    def __init__(self, logger: logging.Logger, list_name: str):
        super().__init__(logger, {"tag": f"{TAG_PREFIX}-{list_name}"})

    @property
    def tag(self) -> str:
        return self.extra["tag"]

    def process(self, msg, kwargs):
        kwargs.setdefault("extra", {}).update(self.extra)
        return f"{self.tag}: {msg}", kwargs


def list_logger(logger: logging.Logger, list_name: str) -> ListLogger:
    """Return a tagged logger for a list."""
    return ListLogger(logger, list_name)


def setup_logging(verbose: bool = False, syslog: bool = True) -> None:
    """
    Configure root logging for a CLI invocation.

    Console output mirrors the plain format used for interactive runs; when
    a local syslog socket exists, events are also forwarded there.

    Args:
        verbose: Enable debug output
        syslog: Attach a syslog handler if /dev/log is available
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(levelname)s: %(message)s",
        )
    else:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
        )

    if syslog and SYSLOG_SOCKET.exists():
        try:
            handler = logging.handlers.SysLogHandler(address=str(SYSLOG_SOCKET))
        except OSError as e:
            logging.getLogger(__name__).debug("syslog unavailable: %s", e)
            return
        handler.ident = f"{TAG_PREFIX}: "
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler.setLevel(logging.INFO)
        logging.getLogger().addHandler(handler)
