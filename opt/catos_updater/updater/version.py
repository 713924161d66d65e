"""
Version parsing, comparison and the locally installed version.

Versions are dot-separated non-negative integers. Shorter versions are
padded with zeros, so "2" == "2.0.0".
"""

import logging
from typing import Tuple, Union

from .errors import MalformedVersionError

logger = logging.getLogger(__name__)

# Reported when the version file is missing or unreadable
UNKNOWN_VERSION = 'unknown'

VersionLike = Union[str, Tuple[int, ...]]


def parse_version(text: str) -> Tuple[int, ...]:
    """
    Parse a dotted numeric version string.

    Args:
        text: Version string such as "1.2.0"

    Returns:
        tuple: Integer components in order

    Raises:
        MalformedVersionError: If any segment is empty or not a decimal number
    """
    if not isinstance(text, str):
        raise MalformedVersionError(f"Version must be a string, got {type(text).__name__}")

    parts = text.strip().split('.')
    components = []
    for part in parts:
        # str.isdigit() accepts non-ASCII digits, int() would then accept them too
        if not part or not (part.isascii() and part.isdigit()):
            raise MalformedVersionError(f"Malformed version: {text!r}")
        components.append(int(part))
    return tuple(components)


def _as_components(version: VersionLike) -> Tuple[int, ...]:
    if isinstance(version, tuple):
        return version
    return parse_version(version)


def compare_versions(a: VersionLike, b: VersionLike) -> int:
    """
    Compare two versions.

    Returns:
        int: -1 if a < b, 0 if equal, 1 if a > b
    """
    left = _as_components(a)
    right = _as_components(b)

    length = max(len(left), len(right))
    left = left + (0,) * (length - len(left))
    right = right + (0,) * (length - len(right))

    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def is_newer(candidate: VersionLike, current: VersionLike) -> bool:
    """True if candidate is newer than current. UNKNOWN_VERSION is older than anything."""
    if current == UNKNOWN_VERSION:
        return True
    return compare_versions(candidate, current) > 0


def read_current_version(path: str) -> str:
    """
    Read the installed version from the version file.

    Never raises: an unreadable, undecodable or empty file yields
    UNKNOWN_VERSION so an update check can still be attempted.
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            version = f.read().strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to read version file {path}: {e}")
        return UNKNOWN_VERSION

    if not version:
        logger.warning(f"Version file {path} is empty")
        return UNKNOWN_VERSION
    return version
