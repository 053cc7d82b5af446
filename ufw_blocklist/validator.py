"""Validation of address records, seed files, list names and URLs."""

import ipaddress
import logging
import os
import re
import stat
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional
from urllib.parse import urlparse

from .constants import (
    CIDR_PATTERN,
    COMMENT_CHARS,
    DEFAULT_REJECT_EXAMPLES,
    LIST_NAME_PATTERN,
    SET_NAME_PATTERN,
    SEED_FILE_MODE,
    SEED_FILE_OWNER,
)
from .exceptions import InputError, ValidationError

logger = logging.getLogger(__name__)

_CIDR_RE = re.compile(CIDR_PATTERN)
_UNROUTABLE = ("unreachable", "prohibit", "blackhole")


@dataclass(frozen=True)
class AddressRecord:
    """An IPv4 prefix: base address as a 32-bit integer plus prefix length.

    Host bits are kept as given; ``network`` is the masked prefix the set
    actually stores.
    """

    address: int
    prefix: int = 32

    def __post_init__(self):
        if not 0 <= self.address <= 0xFFFFFFFF:
            raise ValidationError(f"Address out of range: {self.address}")
        if not 0 <= self.prefix <= 32:
            raise ValidationError(f"Prefix length out of range: {self.prefix}")

    @property
    def base(self) -> str:
        """Dotted-quad form of the base address."""
        return str(ipaddress.IPv4Address(self.address))

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network((self.address, self.prefix), strict=False)

    def __str__(self) -> str:
        return f"{self.base}/{self.prefix}"

    @classmethod
    def parse(cls, text: str) -> "AddressRecord":
        """
        Parse a single ``A.B.C.D[/N]`` token.

        Args:
            text: The token

        Returns:
            The record; bare addresses become /32

        Raises:
            ValidationError: If the token does not match the grammar
        """
        match = _CIDR_RE.fullmatch(text.strip())
        if not match:
            raise ValidationError(f"Invalid address: {text}")

        # Octets are re-joined as integers so leading zeros are accepted
        dotted = ".".join(str(int(octet)) for octet in match.groups()[:4])
        try:
            address = ipaddress.IPv4Address(dotted)
        except ipaddress.AddressValueError as e:
            raise ValidationError(f"Invalid address: {text} - {e}") from e

        prefix = 32 if match.group(5) is None else int(match.group(5))
        return cls(int(address), prefix)

    def storable(self) -> List["AddressRecord"]:
        """
        Records a ``hash:net`` set can hold for this prefix.

        The set type refuses a zero prefix, so /0 is split into its two /1
        halves; every other record is returned as is.
        """
        if self.prefix:
            return [self]
        return [AddressRecord(0, 1), AddressRecord(0x80000000, 1)]


@dataclass
class RejectReport:
    """Counts rejected entries and keeps a few examples for diagnostics."""

    max_examples: int = DEFAULT_REJECT_EXAMPLES
    count: int = 0
    examples: List[str] = field(default_factory=list)

    def add(self, value: str) -> None:
        self.count += 1
        if len(self.examples) < self.max_examples:
            self.examples.append(value)

    def summary(self) -> str:
        if not self.count:
            return "no entries rejected"
        return f"{self.count} entries rejected, e.g. {', '.join(self.examples)}"


class RouteChecker:
    """Asks the kernel routing table whether an address is reachable."""

    def __init__(self, ip_cmd: str = "ip"):
        self.ip_cmd = ip_cmd

    def is_routable(self, record: AddressRecord) -> bool:
        try:
            result = subprocess.run(
                [self.ip_cmd, "-4", "route", "get", record.base],
                capture_output=True,
                text=True,
            )
        except OSError as e:
            # Without the ip binary nothing can be proven unroutable
            logger.debug("Route check unavailable: %s", e)
            return True

        if result.returncode != 0:
            return False
        return not result.stdout.strip().startswith(_UNROUTABLE)


def parse_records(
    content: str,
    report: Optional[RejectReport] = None,
    route_checker: Optional[RouteChecker] = None,
) -> Iterator[AddressRecord]:
    """
    Lazily extract address records from raw text.

    Supports:
    - One or more addresses/CIDRs per line, surrounded by any commentary
    - Lines starting with # or ; are comments
    - Blank lines ignored
    - /0 is yielded as its two /1 halves

    Args:
        content: The raw text
        report: Collects rejected tokens; never raises for a bad entry
        route_checker: When given, records it reports unroutable are rejected

    Yields:
        AddressRecord for every valid entry
    """
    if report is None:
        report = RejectReport()

    for line in content.splitlines():
        line = line.strip()

        if not line or line.startswith(COMMENT_CHARS):
            continue

        matches = list(_CIDR_RE.finditer(line))
        if not matches:
            report.add(line)
            continue

        for match in matches:
            try:
                parsed = AddressRecord.parse(match.group(0))
            except ValidationError:
                report.add(match.group(0))
                continue

            for record in parsed.storable():
                if route_checker is not None and not route_checker.is_routable(record):
                    report.add(str(record))
                    continue

                yield record


def unique_records(records: Iterable[AddressRecord]) -> List[AddressRecord]:
    """
    Drop duplicate records, keeping first-seen order.

    Records are compared by the masked network a ``hash:net`` set stores,
    so ``10.0.0.1/8`` after ``10.0.0.0/8`` is a duplicate and the returned
    count matches the set's membership.
    """
    seen = set()
    result = []
    for record in records:
        if record.network not in seen:
            seen.add(record.network)
            result.append(record)
    return result


def check_seed_file(path: Path, owner: int = SEED_FILE_OWNER) -> None:
    """
    Refuse seed files that are missing or writable by anyone but the owner.

    Args:
        path: The seed file
        owner: Required owning uid

    Raises:
        InputError: If the file is missing, not a regular file, or insecure
    """
    try:
        st = os.stat(path)
    except FileNotFoundError as e:
        raise InputError(f"Seed file not found: {path}") from e
    except OSError as e:
        raise InputError(f"Cannot stat seed file {path}: {e}") from e

    if not stat.S_ISREG(st.st_mode):
        raise InputError(f"Seed file is not a regular file: {path}")

    if st.st_uid != owner:
        raise InputError(f"Seed file {path} must be owned by uid {owner}, not {st.st_uid}")

    mode = stat.S_IMODE(st.st_mode)
    if mode & ~SEED_FILE_MODE:
        raise InputError(f"Seed file {path} has insecure permissions {oct(mode)}, expected 0o600")


def read_seed_file(path: Path, owner: int = SEED_FILE_OWNER) -> str:
    """
    Read a seed file after checking its ownership and permissions.

    Raises:
        InputError: If the file is insecure or unreadable
    """
    path = Path(path)
    check_seed_file(path, owner)
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise InputError(f"Cannot read seed file {path}: {e}") from e


def validate_list_name(name: str) -> bool:
    """
    Validate a list name, which doubles as ipset and chain name prefix.

    Rules:
    - Must start with letter
    - Max 22 characters
    - Only alphanumeric, underscore, hyphen

    Raises:
        ValidationError: If the name is invalid
    """
    if not name:
        raise ValidationError("List name cannot be empty")

    if not re.match(LIST_NAME_PATTERN, name):
        raise ValidationError(
            f"Invalid list name '{name}'. Must start with letter, "
            "contain only alphanumeric/underscore/hyphen, max 22 chars."
        )
    return True


def validate_url(url: str) -> bool:
    """
    Validate URL format.

    Raises:
        ValidationError: If the URL is invalid
    """
    if not url:
        raise ValidationError("URL cannot be empty")

    parsed = urlparse(url)

    if parsed.scheme not in ("http", "https"):
        raise ValidationError("URL must start with http:// or https://")

    if not parsed.netloc:
        raise ValidationError("URL must have a valid hostname")

    return True


def validate_set_name(name: str) -> bool:
    """
    Validate an ipset name, temporary generations included.

    Raises:
        ValidationError: If the name is invalid
    """
    if not name or not re.match(SET_NAME_PATTERN, name):
        raise ValidationError(f"Invalid ipset name '{name}'")
    return True
