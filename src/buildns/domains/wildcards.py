"""Wildcard hostname helpers.

A wildcard marker on a claimed domain covers exactly one extra label:
    - *.myapp.build matches: api.myapp.build, www.myapp.build
    - *.myapp.build does NOT match: deep.api.myapp.build (no nested wildcards)
    - *.myapp.build does NOT match: myapp.build (wildcard requires a label)
"""

from __future__ import annotations

import re
from functools import lru_cache


def is_wildcard_pattern(host: str) -> bool:
    """Check if a hostname is a wildcard pattern.

    Examples:
        >>> is_wildcard_pattern("*.myapp.build")
        True
        >>> is_wildcard_pattern("api.myapp.build")
        False
    """
    return host.startswith("*.")


def wildcard_for(fqdn: str) -> str:
    """Wildcard pattern covering one label below a hostname.

    Examples:
        >>> wildcard_for("myapp.build")
        '*.myapp.build'
    """
    return f"*.{fqdn}"


def get_base_domain(wildcard_pattern: str) -> str:
    """Extract the base domain from a wildcard pattern.

    Raises:
        ValueError: If pattern is not a valid wildcard.

    Examples:
        >>> get_base_domain("*.myapp.build")
        'myapp.build'
    """
    if not is_wildcard_pattern(wildcard_pattern):
        raise ValueError(f"Not a wildcard pattern: {wildcard_pattern}")
    return wildcard_pattern[2:]


@lru_cache(maxsize=1000)
def _compile_wildcard_regex(pattern: str) -> re.Pattern[str]:
    """Compile a wildcard pattern to a regex (cached).

    Converts *.myapp.build to ^[^.]+\\.myapp\\.build$
    """
    escaped = re.escape(pattern)
    regex_pattern = escaped.replace(r"\*", r"[^.]+")
    return re.compile(f"^{regex_pattern}$", re.IGNORECASE)


def match_wildcard(host: str, pattern: str) -> bool:
    """Check if a hostname matches a wildcard pattern.

    Examples:
        >>> match_wildcard("api.myapp.build", "*.myapp.build")
        True
        >>> match_wildcard("deep.api.myapp.build", "*.myapp.build")
        False
        >>> match_wildcard("myapp.build", "*.myapp.build")
        False
    """
    if not is_wildcard_pattern(pattern):
        return False

    regex = _compile_wildcard_regex(pattern)
    return bool(regex.match(host.lower()))


def find_matching_wildcard(host: str, wildcards: list[str]) -> str | None:
    """Find the first wildcard pattern that matches a hostname."""
    for pattern in wildcards:
        if match_wildcard(host, pattern):
            return pattern
    return None
