#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Utilities."""

import ipaddress
from typing import Dict, Iterable, List, Optional

_TRUE_VALUES = ("1", "t", "true")


def is_hostname(value: Optional[str]) -> bool:
    """Return False if input value is an IP address; True otherwise."""
    if value is None:
        return False

    try:
        ipaddress.ip_address(value)
        # No exception raised so this is an IP address.
        return False
    except ValueError:
        # This is not an IP address so assume it's a hostname.
        return bool(value)


def parse_bool(value: Optional[str]) -> bool:
    """Parse a boolean flag the way the tsuru API writes them.

    Anything that is not recognizably true (including garbage) is False.
    """
    if not value:
        return False
    return value.strip().lower() in _TRUE_VALUES


def merge_maps(*maps: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Merge string maps; the first map defining a key wins."""
    merged: Dict[str, str] = {}
    for m in maps:
        for key, value in (m or {}).items():
            merged.setdefault(key, value)
    return merged


def sorted_unique(values: Iterable[str]) -> List[str]:
    """Canonical representation of a hostname set."""
    return sorted({v for v in values if v})


def split_hosts(value: Optional[str]) -> List[str]:
    """Split a comma separated annotation into its (non-empty) hosts."""
    if not value:
        return []
    return [v for v in value.split(",") if v]


def join_hosts(values: Iterable[str]) -> str:
    return ",".join(sorted_unique(values))


def parse_key_value(raw: str) -> Dict[str, str]:
    """Parse a single ``key=value`` pair.

    Raises:
        ValueError: if ``raw`` has no ``=`` separator.
    """
    if "=" not in raw:
        raise ValueError('must be on the form "key=value"')
    key, value = raw.split("=", 1)
    return {key: value}
