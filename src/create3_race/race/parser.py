"""Decode worker output into a race result."""

from __future__ import annotations

from create3_race.errors import ParseError
from create3_race.race.models import RaceResult


def parse_race_output(raw_output: str) -> RaceResult:
    """Parse ``salt,address`` worker output.

    Only the first comma separates the fields; everything after it belongs to
    the address. Both fields are trimmed and must be non-empty.
    """

    salt, separator, address = raw_output.partition(",")
    if not separator:
        raise ParseError(f"Worker output has no salt/address separator: {_preview(raw_output)}")
    salt = salt.strip()
    address = address.strip()
    if not salt:
        raise ParseError(f"Worker output has an empty salt: {_preview(raw_output)}")
    if not address:
        raise ParseError(f"Worker output has an empty address: {_preview(raw_output)}")
    return RaceResult(salt=salt, address=address)


def _preview(value: str, limit: int = 120) -> str:
    text = value.strip()
    if len(text) <= limit:
        return repr(text)
    return repr(text[:limit] + "...")
