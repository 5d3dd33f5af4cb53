"""
Deterministic juror identity.

resolve() maps (display name, organization) to a stable id so a juror on a
new device lands on the same records without any lookup. The normalization
and the hash are a versioned contract: changing either orphans every
existing identity, credential and record.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass

IDENTITY_VERSION = "j1"

FNV32_OFFSET = 0x811C9DC5
FNV32_PRIME = 0x01000193

# Letters that have no NFKD decomposition to ASCII.
_FOLD = str.maketrans({
    "ı": "i",
    "ł": "l",
    "ø": "o",
    "đ": "d",
    "ð": "d",
    "þ": "th",
    "ß": "ss",
    "æ": "ae",
    "œ": "oe",
})

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class Identity:
    id: str
    display_name: str
    organization: str


def normalize(text: str) -> str:
    """Lower-case, fold diacritics, collapse whitespace, drop punctuation."""
    s = unicodedata.normalize("NFKD", str(text or "")).lower().translate(_FOLD)
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", s).strip()


def fnv1a_32(data: bytes) -> int:
    h = FNV32_OFFSET
    for b in data:
        h ^= b
        h = (h * FNV32_PRIME) & 0xFFFFFFFF
    return h


def resolve(display_name: str, organization: str) -> str:
    key = f"{normalize(display_name)}__{normalize(organization)}"
    return f"{IDENTITY_VERSION}-{fnv1a_32(key.encode('utf-8')):08x}"


def make_identity(display_name: str, organization: str) -> Identity:
    return Identity(
        id=resolve(display_name, organization),
        display_name=display_name.strip(),
        organization=organization.strip(),
    )
