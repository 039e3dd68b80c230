"""Codec for Kanidm's string-encoded attribute values.

Kanidm exposes composite values as opaque strings in an entity's attribute bag.
The grammar is a property of the server's display format, not a documented
contract, so all knowledge about it lives here:

    member                  name@domain
    oauth2_rs_scope_map     group@domain: {"openid", "profile"}
    oauth2_rs_sup_scope_map group@domain: {"admin"}
    oauth2_rs_claim_map     claim:group@domain:<delim>:"value1,value2"

where ``<delim>`` is a single character selecting the claim's join type.

Map entries are matched on exact tokens (the group name with its realm suffix
stripped), never on string prefixes, so a group named ``dev`` does not match an
entry for ``devops``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from kanidm_provision.errors import KanidmValidationError

# Attributes whose values are realm-qualified references to other entities.
REALM_QUALIFIED_ATTRS = frozenset({"member"})

# Attributes the server stores as unordered sets.
UNORDERED_ATTRS = frozenset({"member", "oauth2_rs_origin"})

IMAGE_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
}


def strip_realm(value: str) -> str:
    """Strip the ``@domain`` qualification from a value, if any."""
    return value.split("@", 1)[0]


def normalize_values(attr: str, values: list[str]) -> list[str]:
    """Normalize attribute values so desired and current state compare equal."""
    if attr in REALM_QUALIFIED_ATTRS:
        values = [strip_realm(v) for v in values]
    if attr in UNORDERED_ATTRS:
        return sorted(set(values))
    return list(values)


def dedupe_values(attr: str, values: list[str]) -> list[str]:
    """Drop repeated values of set-valued attributes, keeping declared order."""
    if attr in UNORDERED_ATTRS:
        return list(dict.fromkeys(values))
    return list(values)


class JoinType(str, Enum):
    """How multiple claim values are combined into one token claim."""

    SSV = "ssv"
    CSV = "csv"
    ARRAY = "array"

    @property
    def delimiter(self) -> str:
        return _JOIN_DELIMITERS[self]

    @classmethod
    def from_literal(cls, literal: str) -> "JoinType":
        """Parse a declared join type literal."""
        try:
            return cls(literal)
        except ValueError:
            allowed = ", ".join(j.value for j in cls)
            raise KanidmValidationError(
                f"Invalid join type '{literal}' (expected one of: {allowed})"
            ) from None

    @classmethod
    def from_delimiter(cls, delimiter: str) -> "JoinType":
        """Parse the delimiter character embedded in a claim map entry."""
        for join_type, char in _JOIN_DELIMITERS.items():
            if char == delimiter:
                return join_type
        raise KanidmValidationError(f"Unknown claim map join delimiter: {delimiter!r}")


_JOIN_DELIMITERS = {
    JoinType.SSV: " ",
    JoinType.CSV: ",",
    JoinType.ARRAY: ";",
}


@dataclass(frozen=True)
class ScopeMapEntry:
    """A decoded scope map (or supplementary scope map) entry."""

    group: str
    scopes: tuple[str, ...]


@dataclass(frozen=True)
class ClaimMapEntry:
    """A decoded claim map entry."""

    claim: str
    group: str
    join_type: JoinType
    values: tuple[str, ...]


def decode_scope_map_entry(raw: str) -> ScopeMapEntry:
    """Decode ``group@domain: {"a", "b"}``."""
    key, sep, value = raw.partition(": ")
    value = value.strip()
    if not sep or not key or not (value.startswith("{") and value.endswith("}")):
        raise KanidmValidationError(f"Malformed scope map entry: {raw!r}")
    inner = value[1:-1].strip()
    scopes = [s.strip().strip('"') for s in inner.split(",")] if inner else []
    return ScopeMapEntry(group=strip_realm(key), scopes=tuple(sorted(scopes)))


def encode_scope_map_entry(group: str, scopes: list[str], domain: str | None = None) -> str:
    """Encode a scope map entry the way the server displays it."""
    key = f"{group}@{domain}" if domain else group
    inner = ", ".join(f'"{s}"' for s in sorted(scopes))
    return f"{key}: {{{inner}}}"


def decode_claim_map_entry(raw: str) -> ClaimMapEntry:
    """Decode ``claim:group@domain:<delim>:"v1,v2"``."""
    parts = raw.split(":", 3)
    if len(parts) != 4 or not parts[0] or not parts[1] or len(parts[2]) != 1:
        raise KanidmValidationError(f"Malformed claim map entry: {raw!r}")
    claim, group, delimiter, quoted = parts
    inner = quoted.strip('"')
    values = inner.split(",") if inner else []
    return ClaimMapEntry(
        claim=claim,
        group=strip_realm(group),
        join_type=JoinType.from_delimiter(delimiter),
        values=tuple(sorted(values)),
    )


def encode_claim_map_entry(
    claim: str,
    group: str,
    join_type: JoinType,
    values: list[str],
    domain: str | None = None,
) -> str:
    """Encode a claim map entry the way the server displays it."""
    key = f"{group}@{domain}" if domain else group
    joined = ",".join(sorted(values))
    return f'{claim}:{key}:{join_type.delimiter}:"{joined}"'


def find_scopes(entries: list[str], group: str) -> list[str]:
    """Return the sorted scopes mapped to ``group`` (empty if unmapped)."""
    for raw in entries:
        entry = decode_scope_map_entry(raw)
        if entry.group == group:
            return list(entry.scopes)
    return []


def find_claim_values(entries: list[str], claim: str, group: str) -> list[str]:
    """Return the sorted claim values mapped to ``claim``/``group``."""
    for raw in entries:
        entry = decode_claim_map_entry(raw)
        if entry.claim == claim and entry.group == group:
            return list(entry.values)
    return []


def claim_join_type(entries: list[str], claim: str) -> JoinType:
    """Return the join type currently used for ``claim``.

    A claim without any entry reports the server default, ``array``.
    """
    for raw in entries:
        entry = decode_claim_map_entry(raw)
        if entry.claim == claim:
            return entry.join_type
    return JoinType.ARRAY


def image_content_type(path: str | Path) -> str:
    """Select the upload content type from an image file's extension."""
    suffix = Path(path).suffix.lower()
    content_type = IMAGE_CONTENT_TYPES.get(suffix)
    if content_type is None:
        allowed = ", ".join(sorted(s.lstrip(".") for s in IMAGE_CONTENT_TYPES))
        raise KanidmValidationError(
            f"Unsupported image extension for {path} (expected one of: {allowed})"
        )
    return content_type
