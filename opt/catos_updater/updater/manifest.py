"""
Remote update manifest.

The manifest is a small JSON document served next to the packages:

    {
        "latest_version": "1.3.0",
        "release_notes": "...",
        "update_package": {"filename": "update.zip", "sha256sum": "<64 hex>"}
    }
"""

import re
import json
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Union

import aiohttp

from ..utils.file_operations import is_safe_filename
from .errors import ManifestFormatError, MalformedVersionError, NetworkError
from .version import parse_version

logger = logging.getLogger(__name__)

_SHA256_HEX = re.compile(r'^[0-9a-fA-F]{64}$')


@dataclass(frozen=True)
class PackageRef:
    """Downloadable update package named by the manifest."""

    filename: str
    sha256sum: str

    @classmethod
    def from_dict(cls, data: Any) -> 'PackageRef':
        if not isinstance(data, dict):
            raise ManifestFormatError("update_package must be an object")

        filename = data.get('filename')
        sha256sum = data.get('sha256sum')

        if not isinstance(filename, str) or not filename:
            raise ManifestFormatError("update_package.filename is missing or not a string")
        if not is_safe_filename(filename):
            raise ManifestFormatError(f"update_package.filename is not a plain file name: {filename!r}")
        if not isinstance(sha256sum, str) or not _SHA256_HEX.match(sha256sum):
            raise ManifestFormatError("update_package.sha256sum must be a 64 character hex digest")

        return cls(filename=filename, sha256sum=sha256sum.lower())

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class Manifest:
    latest_version: str
    release_notes: str
    update_package: PackageRef

    @classmethod
    def from_dict(cls, data: Any) -> 'Manifest':
        """
        Validate a decoded manifest document.

        Raises:
            ManifestFormatError: If required fields are absent or of the wrong shape
        """
        if not isinstance(data, dict):
            raise ManifestFormatError("Manifest must be a JSON object")

        latest_version = data.get('latest_version')
        if not isinstance(latest_version, str) or not latest_version.strip():
            raise ManifestFormatError("latest_version is missing or not a string")
        try:
            parse_version(latest_version)
        except MalformedVersionError as e:
            raise ManifestFormatError(f"latest_version is not a dotted numeric version: {e}")

        release_notes = data.get('release_notes', '')
        if release_notes is None:
            release_notes = ''
        if not isinstance(release_notes, str):
            raise ManifestFormatError("release_notes must be a string")

        if 'update_package' not in data:
            raise ManifestFormatError("update_package is missing")
        package = PackageRef.from_dict(data['update_package'])

        return cls(
            latest_version=latest_version.strip(),
            release_notes=release_notes,
            update_package=package,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'latest_version': self.latest_version,
            'release_notes': self.release_notes,
            'update_package': self.update_package.to_dict(),
        }


def parse_manifest(body: Union[str, bytes]) -> Manifest:
    """Decode and validate a manifest body (UTF-8 bytes or text)."""
    if isinstance(body, bytes):
        try:
            body = body.decode('utf-8-sig')
        except UnicodeDecodeError as e:
            raise ManifestFormatError(f"Manifest is not valid UTF-8: {e}")
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise ManifestFormatError(f"Manifest is not valid JSON: {e}")
    return Manifest.from_dict(data)


class ManifestClient:
    """Fetches the update manifest. Does not retry; retry policy belongs to the caller."""

    def __init__(self, url: str, timeout: Optional[float] = 30):
        self.url = url
        self.timeout = timeout

    async def fetch(self) -> Manifest:
        """
        Fetch and parse the manifest.

        Raises:
            NetworkError: On timeout, DNS failure, refused connection or non-200 status
            ManifestFormatError: If the body is not a well-formed manifest
        """
        logger.info(f"Fetching update manifest from {self.url}")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(self.url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                    if resp.status != 200:
                        raise NetworkError(f"Failed to fetch manifest from {self.url}. Status: {resp.status}")
                    # Content type is ignored, static hosts serve the manifest as text/plain
                    body = await resp.read()
        except asyncio.TimeoutError:
            raise NetworkError(f"Timed out fetching manifest from {self.url}")
        except aiohttp.ClientError as e:
            raise NetworkError(f"Manifest fetch error: {e}")

        manifest = parse_manifest(body)
        logger.info(f"Manifest reports latest version {manifest.latest_version}")
        return manifest
