"""
Update availability check.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

from .errors import MalformedVersionError
from .manifest import ManifestClient, PackageRef
from .version import UNKNOWN_VERSION, is_newer, parse_version

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    update_available: bool
    current_version: str
    latest_version: str
    release_notes: str
    package: PackageRef

    def to_dict(self) -> Dict[str, Any]:
        return {
            'update_available': self.update_available,
            'current_version': self.current_version,
            'latest_version': self.latest_version,
            'release_notes': self.release_notes,
            'update_package': self.package.to_dict(),
        }


class UpdateChecker:
    """
    Combines the manifest client and the local version to decide whether
    an update is available. Manifest errors propagate unchanged so callers
    can tell "check failed" apart from "no update".
    """

    def __init__(self, manifest_client: ManifestClient, version_reader: Callable[[], str]):
        self.manifest_client = manifest_client
        self.version_reader = version_reader

    def _current_version(self) -> str:
        current = self.version_reader()
        if current == UNKNOWN_VERSION:
            return current
        try:
            parse_version(current)
        except MalformedVersionError:
            logger.warning(f"Installed version {current!r} is malformed; treating it as {UNKNOWN_VERSION}")
            return UNKNOWN_VERSION
        return current

    async def check(self) -> CheckResult:
        current = self._current_version()
        manifest = await self.manifest_client.fetch()

        available = is_newer(manifest.latest_version, current)
        if available:
            logger.info(f"Update available: {current} -> {manifest.latest_version}")
        else:
            logger.info(f"System is up to date (installed {current}, latest {manifest.latest_version})")

        return CheckResult(
            update_available=available,
            current_version=current,
            latest_version=manifest.latest_version,
            release_notes=manifest.release_notes,
            package=manifest.update_package,
        )
