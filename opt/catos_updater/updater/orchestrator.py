"""
Update session state machine.

    Idle -> Checking -> UpToDate (-> Idle)
                     -> UpdateAvailable -> Downloading -> Verifying -> Installing -> Completed
    any failing stage -> Failed

Completed and Failed are held until the caller dismisses them. Only one
session exists at a time; a request that would start a second one while a
download/verify/install is in flight fails immediately with SessionBusyError.

Nothing here is cancellable once started. In particular, if the process dies
while the privileged install script runs, the system is left in whatever
state the script reached.
"""

import uuid
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..utils.file_operations import remove_path
from .checker import CheckResult, UpdateChecker
from .downloader import Downloader, DownloadProgress, package_url
from .errors import (
    ChecksumMismatchError,
    InstallationError,
    MalformedVersionError,
    NoUpdatePendingError,
    SessionBusyError,
    error_to_dict,
)
from .events import EVENT_PROGRESS, EVENT_STATE, EventBus, UpdateEvent
from .installer import Installer
from .integrity import verify_checksum
from .manifest import ManifestClient, PackageRef
from .privilege import get_privileged_runner
from .version import UNKNOWN_VERSION, compare_versions, read_current_version

logger = logging.getLogger(__name__)


class UpdateState(str, Enum):
    IDLE = 'idle'
    CHECKING = 'checking'
    UP_TO_DATE = 'up_to_date'
    UPDATE_AVAILABLE = 'update_available'
    DOWNLOADING = 'downloading'
    VERIFYING = 'verifying'
    INSTALLING = 'installing'
    COMPLETED = 'completed'
    FAILED = 'failed'


PIPELINE_STATES = {UpdateState.DOWNLOADING, UpdateState.VERIFYING, UpdateState.INSTALLING}
TERMINAL_STATES = {UpdateState.COMPLETED, UpdateState.FAILED}

POST_INSTALL_CHECKS = ('none', 'version_file')


@dataclass
class UpdateSession:
    """One check-or-install cycle. Never persisted."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    state: UpdateState = UpdateState.IDLE
    check_result: Optional[CheckResult] = None
    package: Optional[PackageRef] = None
    progress: Optional[DownloadProgress] = None
    package_path: Optional[str] = None
    error: Optional[BaseException] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at,
            'state': self.state.value,
            'check_result': self.check_result.to_dict() if self.check_result else None,
            'package': self.package.to_dict() if self.package else None,
            'progress': self.progress.to_dict() if self.progress else None,
            'package_path': self.package_path,
            'error': error_to_dict(self.error) if self.error else None,
            'finished_at': self.finished_at,
        }


class UpdateOrchestrator:
    """Drives the update pipeline and owns the single active session."""

    def __init__(
        self,
        checker: UpdateChecker,
        downloader: Downloader,
        installer: Installer,
        version_reader: Callable[[], str],
        download_base_url: str,
        post_install_check: str = 'none',
        events: Optional[EventBus] = None
    ):
        if post_install_check not in POST_INSTALL_CHECKS:
            raise ValueError(f"Unknown post_install_check: {post_install_check}")

        self.checker = checker
        self.downloader = downloader
        self.installer = installer
        self.version_reader = version_reader
        self.download_base_url = download_base_url
        self.post_install_check = post_install_check
        self.events = events or EventBus()

        self._state = UpdateState.IDLE
        self._session: Optional[UpdateSession] = None
        self._check_task: Optional[asyncio.Future] = None
        self._install_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> UpdateState:
        return self._state

    @property
    def session(self) -> Optional[UpdateSession]:
        return self._session

    def get_current_version(self) -> str:
        return self.version_reader()

    def get_status(self) -> Dict[str, Any]:
        return {
            'state': self._state.value,
            'session': self._session.to_dict() if self._session else None,
        }

    # --- State handling ---

    def _set_state(self, state: UpdateState, session: Optional[UpdateSession] = None):
        self._state = state
        if session is not None:
            session.state = state
            if state in TERMINAL_STATES:
                session.finished_at = datetime.now().isoformat()

        logger.info(f"Update state -> {state.value}")
        error = session.error if session is not None else None
        self.events.publish(UpdateEvent(
            kind=EVENT_STATE,
            session_id=session.id if session is not None else None,
            state=state.value,
            error=error_to_dict(error) if error is not None else None,
        ))

    def _fail(self, session: UpdateSession, error: BaseException):
        logger.error(f"Update failed while {self._state.value}: {error}")
        session.error = error
        self._set_state(UpdateState.FAILED, session)

    def _ensure_can_start(self, action: str):
        if self._state == UpdateState.CHECKING or self._state in PIPELINE_STATES:
            raise SessionBusyError(f"Cannot {action}: an update session is {self._state.value}")
        if self._state in TERMINAL_STATES:
            raise SessionBusyError(
                f"Cannot {action}: the previous update session {self._state.value}; dismiss it first"
            )

    # --- Checking ---

    async def check_for_updates(self) -> CheckResult:
        """
        Check whether a newer version is available.

        Concurrent calls while a check is running share that check's result.

        Raises:
            SessionBusyError: While an install is in flight or a terminal state is unacknowledged
            NetworkError, ManifestFormatError: If the check fails (session goes to Failed)
        """
        if self._state == UpdateState.CHECKING and self._check_task is not None:
            logger.info("Update check already in progress, joining it")
            return await asyncio.shield(self._check_task)

        self._ensure_can_start('check for updates')

        if self._session is not None:
            logger.info(f"Superseding update session {self._session.id}")
        session = UpdateSession()
        self._session = session
        self._set_state(UpdateState.CHECKING, session)

        self._check_task = asyncio.ensure_future(self._run_check(session))
        return await asyncio.shield(self._check_task)

    async def _run_check(self, session: UpdateSession) -> CheckResult:
        try:
            result = await self.checker.check()
        except Exception as e:
            self._fail(session, e)
            raise
        finally:
            self._check_task = None

        session.check_result = result
        if result.update_available:
            session.package = result.package
            self._set_state(UpdateState.UPDATE_AVAILABLE, session)
        else:
            self._set_state(UpdateState.UP_TO_DATE, session)
            self._set_state(UpdateState.IDLE, session)
        return result

    # --- Download and install ---

    def _begin_install(self, package: Optional[PackageRef]) -> UpdateSession:
        self._ensure_can_start('download and install')

        session = self._session
        if self._state != UpdateState.UPDATE_AVAILABLE or session is None:
            raise NoUpdatePendingError("No update is available; check for updates first")

        if package is not None:
            session.package = package
        self._set_state(UpdateState.DOWNLOADING, session)
        return session

    async def download_and_install(self, package: Optional[PackageRef] = None) -> UpdateSession:
        """
        Download, verify and install the available update.

        Args:
            package: Package to install; defaults to the one from the last check

        Returns:
            UpdateSession: The session, in the Completed state

        Raises:
            SessionBusyError: If a session is already in flight or unacknowledged
            NoUpdatePendingError: If no update is available
            DownloadError, ChecksumMismatchError, ExtractionError, InstallationError,
            OSError: Stage failures (session goes to Failed)
        """
        session = self._begin_install(package)
        await self._run_pipeline(session)
        return session

    def start_download_and_install(self, package: Optional[PackageRef] = None) -> asyncio.Task:
        """
        Start download-and-install in the background.

        The busy check happens before this returns, so a rejected request
        raises here rather than from the task.
        """
        session = self._begin_install(package)
        task = asyncio.ensure_future(self._run_pipeline(session))
        task.add_done_callback(self._on_install_done)
        self._install_task = task
        return task

    def _on_install_done(self, task: asyncio.Task):
        self._install_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Background install finished with {task.exception()!r}")

    def _on_progress(self, session: UpdateSession, progress: DownloadProgress):
        session.progress = progress
        self.events.publish(UpdateEvent(
            kind=EVENT_PROGRESS,
            session_id=session.id,
            state=session.state.value,
            downloaded_bytes=progress.downloaded_bytes,
            total_bytes=progress.total_bytes,
            percent=progress.percent,
            final=progress.complete,
        ))

    async def _run_pipeline(self, session: UpdateSession):
        package = session.package
        try:
            url = package_url(self.download_base_url, package.filename)
            path = await self.downloader.download(
                url, package.filename, lambda progress: self._on_progress(session, progress)
            )
            session.package_path = str(path)

            logger.info("Download complete. Verifying checksum...")
            self._set_state(UpdateState.VERIFYING, session)
            loop = asyncio.get_running_loop()
            matches = await loop.run_in_executor(None, verify_checksum, str(path), package.sha256sum)
            if not matches:
                self._discard_package(path)
                raise ChecksumMismatchError(package.sha256sum)

            logger.info("Checksum verified. Installing update...")
            self._set_state(UpdateState.INSTALLING, session)
            await self.installer.install(str(path))
            self._verify_installed(session)
        except Exception as e:
            self._fail(session, e)
            raise

        try:
            remove_path(self.downloader.download_dir)
        except OSError as e:
            logger.warning(f"Failed to remove download directory {self.downloader.download_dir}: {e}")

        logger.info("Update installed successfully!")
        self._set_state(UpdateState.COMPLETED, session)

    @staticmethod
    def _discard_package(path):
        try:
            remove_path(str(path))
            logger.info(f"Deleted package that failed verification: {path}")
        except OSError as e:
            logger.error(f"Failed to delete package that failed verification {path}: {e}")

    def _verify_installed(self, session: UpdateSession):
        if self.post_install_check != 'version_file' or session.check_result is None:
            return

        expected = session.check_result.latest_version
        installed = self.version_reader()
        try:
            matches = installed != UNKNOWN_VERSION and compare_versions(installed, expected) == 0
        except MalformedVersionError:
            matches = False

        if not matches:
            raise InstallationError(
                f"Installer exited successfully but the installed version is {installed}, expected {expected}",
                returncode=0,
            )
        logger.info(f"Post-install check passed: version file reports {installed}")

    # --- Acknowledgement ---

    def dismiss(self):
        """
        Acknowledge a finished session (or drop an available update) and return to Idle.

        Raises:
            SessionBusyError: While a check or install is in flight
        """
        if self._state == UpdateState.CHECKING or self._state in PIPELINE_STATES:
            raise SessionBusyError(f"Cannot dismiss: an update session is {self._state.value}")
        if self._state == UpdateState.IDLE and self._session is None:
            return

        session = self._session
        self._session = None
        self._set_state(UpdateState.IDLE)
        if session is not None:
            logger.info(f"Dismissed update session {session.id}")


def create_orchestrator(config: Dict[str, Any], events: Optional[EventBus] = None) -> UpdateOrchestrator:
    """
    Build an orchestrator and its collaborators from updater configuration.

    Args:
        config: Updater configuration (see config_loader.DEFAULT_UPDATER_CONFIG)
        events: Optional shared event bus
    """
    version_file = config['version_file']

    def version_reader():
        return read_current_version(version_file)

    checker = UpdateChecker(
        ManifestClient(config['manifest_url'], timeout=config.get('manifest_timeout')),
        version_reader,
    )
    downloader = Downloader(
        config['download_dir'],
        chunk_size=config.get('chunk_size', 65536),
        timeout=config.get('download_timeout'),
    )
    installer = Installer(
        config['staging_dir'],
        get_privileged_runner(config.get('privilege_strategy', 'auto')),
        install_script=config.get('install_script', 'scripts/install_update.sh'),
        timeout=config.get('install_timeout'),
    )
    return UpdateOrchestrator(
        checker,
        downloader,
        installer,
        version_reader,
        config['download_base_url'],
        post_install_check=config.get('post_install_check', 'none'),
        events=events,
    )
