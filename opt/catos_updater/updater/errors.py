"""
Update pipeline exceptions.

Every stage raises one of these; the orchestrator attaches the exception to
the session and the HTTP layer renders it through ``to_dict``.
"""

from typing import Dict, Optional


class UpdaterError(Exception):
    """Base class for all update pipeline failures."""

    code = 'updater_error'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {'code': self.code, 'message': self.message}


class NetworkError(UpdaterError):
    """Transport failure while talking to the update server."""

    code = 'network_error'


class DownloadError(NetworkError):
    """Package transfer failed or could not be written safely."""

    code = 'download_error'


class ManifestFormatError(UpdaterError):
    """The manifest is not valid JSON or lacks required fields."""

    code = 'manifest_format_error'


class MalformedVersionError(ValueError):
    """A version string contains an empty or non-numeric segment."""


class ChecksumMismatchError(UpdaterError):
    """Downloaded package digest does not match the manifest."""

    code = 'checksum_mismatch'

    def __init__(self, expected: str):
        super().__init__(
            'Checksum mismatch! Downloaded file is corrupted or tampered with.'
        )
        self.expected = expected


class ExtractionError(UpdaterError):
    """Package could not be unpacked into the staging directory."""

    code = 'extraction_error'


class InstallationError(UpdaterError):
    """The privileged install entry point failed."""

    code = 'installation_error'

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ''):
        super().__init__(message)
        self.returncode = returncode
        self.output = output

    def to_dict(self) -> Dict[str, str]:
        data = super().to_dict()
        data['output'] = self.output
        return data


class SessionBusyError(UpdaterError):
    """Another update session is in flight or awaiting acknowledgement."""

    code = 'session_busy'


class NoUpdatePendingError(UpdaterError):
    """Download-and-install requested without an available update."""

    code = 'no_update_pending'


def error_to_dict(error: BaseException) -> Dict[str, str]:
    """Structured form of any pipeline failure."""
    if isinstance(error, UpdaterError):
        return error.to_dict()
    if isinstance(error, OSError):
        return {'code': 'io_error', 'message': str(error)}
    return {'code': 'internal_error', 'message': str(error) or type(error).__name__}
