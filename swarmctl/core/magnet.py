"""Magnet URI parsing (BEP 9, BEP 53).

Parsing is purely syntactic: it yields the info hash and advisory fields
without contacting the swarm. Full metadata arrives later through the
engine and is decoded by :mod:`swarmctl.core.metainfo`.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import urllib.parse
from dataclasses import dataclass, field

from swarmctl.utils.exceptions import DecodeError, UnknownSourceError

logger = logging.getLogger(__name__)

MAGNET_PREFIX = "magnet:?xt=urn:btih:"

_HASH_PATTERN = re.compile(r"\b[0-9a-fA-F]{5,40}\b")


@dataclass(frozen=True)
class MagnetInfo:
    """Information extracted from a magnet link."""

    uri: str
    info_hash: str  # lowercase hex, 40 chars
    display_name: str | None = None
    trackers: list[str] = field(default_factory=list)
    web_seeds: list[str] = field(default_factory=list)
    selected_indices: list[int] | None = None  # BEP 53: so
    prioritized_indices: dict[int, int] | None = None  # BEP 53: x.pe


def is_magnet(locator: str) -> bool:
    """Return True if ``locator`` uses the magnet scheme."""
    return locator[:7].lower() == "magnet:"


def is_hash(value: str) -> bool:
    """Return True if ``value`` looks like a bare (possibly partial) hex hash."""
    return _HASH_PATTERN.fullmatch(value.strip()) is not None


def normalize_magnet_hash(value: str) -> str:
    """Turn a bare info hash into a magnet URI; other input is returned as-is."""
    value = value.strip()
    if is_hash(value):
        return MAGNET_PREFIX + value
    return value


def _btih_to_hex(btih: str) -> str:
    """Decode btih which can be hex (40 chars) or base32 (32 chars)."""
    btih = btih.strip()
    try:
        if len(btih) == 40:
            raw = bytes.fromhex(btih)
        elif len(btih) == 32:
            raw = base64.b32decode(btih.upper())
        else:
            msg = f"Info hash has invalid length {len(btih)}"
            raise DecodeError(msg, {"btih": btih})
    except (ValueError, binascii.Error) as e:
        msg = f"Info hash is not valid hex or base32: {btih}"
        raise DecodeError(msg) from e
    return raw.hex()


def _parse_range(token: str) -> range:
    start_s, end_s = token.split("-", 1)
    start, end = int(start_s), int(end_s)
    if start < 0 or start > end:
        msg = f"Invalid range '{token}'"
        raise ValueError(msg)
    return range(start, end + 1)


def _parse_index_list(index_str: str) -> list[int]:
    """Parse comma-separated file indices with optional ranges.

    ``"0,3-5,8"`` -> ``[0, 3, 4, 5, 8]``
    """
    indices: set[int] = set()
    for raw_token in index_str.split(","):
        token = raw_token.strip()
        if not token:
            continue
        if "-" in token:
            indices.update(_parse_range(token))
        else:
            indices.add(int(token))
    return sorted(indices)


def _parse_prioritized_indices(priority_str: str) -> dict[int, int]:
    """Parse ``x.pe`` pairs: ``"0:4,3-5:3"`` -> ``{0: 4, 3: 3, 4: 3, 5: 3}``."""
    priorities: dict[int, int] = {}
    for raw_token in priority_str.split(","):
        token = raw_token.strip()
        if not token:
            continue
        if ":" not in token:
            msg = f"Missing ':' separator in priority pair: {token}"
            raise ValueError(msg)
        file_part, priority_part = token.rsplit(":", 1)
        priority = int(priority_part)
        if not 0 <= priority <= 4:
            msg = f"Priority must be 0-4 (got {priority} in '{token}')"
            raise ValueError(msg)
        file_part = file_part.strip()
        targets = _parse_range(file_part) if "-" in file_part else [int(file_part)]
        for idx in targets:
            priorities[idx] = priority
    return priorities


def parse_magnet(uri: str) -> MagnetInfo:
    """Parse a magnet URI and return :class:`MagnetInfo`.

    Supports xt=urn:btih:<hash>, dn, tr (multiple), ws (multiple) and the
    BEP 53 ``so`` / ``x.pe`` parameters. Malformed BEP 53 values are logged
    and ignored.

    Raises:
        UnknownSourceError: ``uri`` is not a magnet URI.
        DecodeError: the btih parameter is missing or malformed.

    """
    parsed = urllib.parse.urlparse(uri.strip())
    if parsed.scheme.lower() != "magnet":
        msg = "Not a magnet URI"
        raise UnknownSourceError(msg, {"uri": uri})

    qs = urllib.parse.parse_qs(parsed.query)
    btih_value = None
    for xt in qs.get("xt", []):
        if xt.lower().startswith("urn:btih:"):
            btih_value = xt[len("urn:btih:") :]
            break
    if not btih_value:
        msg = "Magnet URI missing xt=urn:btih"
        raise DecodeError(msg, {"uri": uri})

    selected_indices = None
    so_values = qs.get("so", [])
    if so_values:
        try:
            selected_indices = _parse_index_list(so_values[0])
        except ValueError as e:
            logger.warning("Invalid 'so' parameter in magnet URI: %s", e)

    prioritized_indices = None
    x_pe_values = qs.get("x.pe", [])
    if x_pe_values:
        try:
            prioritized_indices = _parse_prioritized_indices(x_pe_values[0])
        except ValueError as e:
            logger.warning("Invalid 'x.pe' parameter in magnet URI: %s", e)

    return MagnetInfo(
        uri=uri,
        info_hash=_btih_to_hex(btih_value),
        display_name=qs.get("dn", [None])[0],
        trackers=qs.get("tr", []),
        web_seeds=qs.get("ws", []),
        selected_indices=selected_indices,
        prioritized_indices=prioritized_indices,
    )


def generate_magnet_link(
    info_hash: str,
    display_name: str | None = None,
    trackers: list[str] | None = None,
    web_seeds: list[str] | None = None,
    selected_indices: list[int] | None = None,
    prioritized_indices: dict[int, int] | None = None,
) -> str:
    """Build a magnet URI, including BEP 53 file selection when given."""
    parts = [MAGNET_PREFIX + info_hash.lower()]

    if display_name:
        parts.append(f"dn={urllib.parse.quote(display_name)}")
    for tracker in trackers or []:
        parts.append(f"tr={urllib.parse.quote(tracker, safe=':/?#[]@!$()*+,;=')}")
    for web_seed in web_seeds or []:
        parts.append(f"ws={urllib.parse.quote(web_seed, safe=':/?#[]@!$()*+,;=')}")
    if selected_indices:
        parts.append("so=" + ",".join(str(i) for i in sorted(set(selected_indices))))
    if prioritized_indices:
        parts.append(
            "x.pe="
            + ",".join(f"{i}:{p}" for i, p in sorted(prioritized_indices.items()))
        )

    return "&".join(parts)
