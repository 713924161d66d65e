"""
Updater package for the CatOS update client.

This package contains the update pipeline:
- Version comparison and the installed version
- Manifest retrieval and validation
- Update availability checks
- Streaming package download with progress events
- SHA-256 package verification
- Package extraction and privileged installation
- The session state machine tying the stages together
"""

from .errors import (
    UpdaterError,
    NetworkError,
    DownloadError,
    ManifestFormatError,
    MalformedVersionError,
    ChecksumMismatchError,
    ExtractionError,
    InstallationError,
    SessionBusyError,
    NoUpdatePendingError,
)

from .version import (
    UNKNOWN_VERSION,
    parse_version,
    compare_versions,
    is_newer,
    read_current_version,
)

from .manifest import (
    Manifest,
    PackageRef,
    ManifestClient,
    parse_manifest,
)

from .checker import (
    CheckResult,
    UpdateChecker,
)

from .downloader import (
    Downloader,
    DownloadProgress,
    package_url,
)

from .integrity import (
    compute_sha256,
    verify_checksum,
)

from .privilege import (
    ExecResult,
    PrivilegedRunner,
    DirectRunner,
    SudoRunner,
    PkexecRunner,
    get_privileged_runner,
)

from .installer import Installer

from .events import (
    UpdateEvent,
    EventBus,
    EventSubscription,
)

from .orchestrator import (
    UpdateState,
    UpdateSession,
    UpdateOrchestrator,
    create_orchestrator,
)

__all__ = [
    # Errors
    'UpdaterError',
    'NetworkError',
    'DownloadError',
    'ManifestFormatError',
    'MalformedVersionError',
    'ChecksumMismatchError',
    'ExtractionError',
    'InstallationError',
    'SessionBusyError',
    'NoUpdatePendingError',
    # Versions
    'UNKNOWN_VERSION',
    'parse_version',
    'compare_versions',
    'is_newer',
    'read_current_version',
    # Manifest and check
    'Manifest',
    'PackageRef',
    'ManifestClient',
    'parse_manifest',
    'CheckResult',
    'UpdateChecker',
    # Download and verification
    'Downloader',
    'DownloadProgress',
    'package_url',
    'compute_sha256',
    'verify_checksum',
    # Installation
    'ExecResult',
    'PrivilegedRunner',
    'DirectRunner',
    'SudoRunner',
    'PkexecRunner',
    'get_privileged_runner',
    'Installer',
    # Orchestration
    'UpdateEvent',
    'EventBus',
    'EventSubscription',
    'UpdateState',
    'UpdateSession',
    'UpdateOrchestrator',
    'create_orchestrator',
]
