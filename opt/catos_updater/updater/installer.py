"""
Package installation.

Installation has two phases:
1. Extract the package into a fixed staging directory
2. Run the package's install entry point with elevated rights

On success the staging directory and the package are removed. On failure
both are left in place for diagnostics.
"""

import os
import stat
import asyncio
import logging
import tarfile
import zipfile
from pathlib import Path
from typing import Optional

from ..utils.file_operations import extract_archive, remove_path
from .errors import ExtractionError, InstallationError
from .privilege import PrivilegedRunner

logger = logging.getLogger(__name__)

DEFAULT_INSTALL_SCRIPT = 'scripts/install_update.sh'


class Installer:

    def __init__(
        self,
        staging_dir: str,
        runner: PrivilegedRunner,
        install_script: str = DEFAULT_INSTALL_SCRIPT,
        timeout: Optional[float] = 1800
    ):
        self.staging_dir = staging_dir
        self.runner = runner
        self.install_script = install_script
        self.timeout = timeout

    def _prepare_staging(self):
        remove_path(self.staging_dir)
        Path(self.staging_dir).mkdir(parents=True, exist_ok=True)

    def _extract(self, package_path: str) -> Path:
        """Extracts the package and returns the install entry point. Runs in executor."""
        try:
            self._prepare_staging()
            extract_archive(package_path, self.staging_dir)
        except (ValueError, OSError, RuntimeError, NotImplementedError,
                zipfile.BadZipFile, tarfile.TarError) as e:
            raise ExtractionError(f"Failed to unpack update: {e}")

        staging = Path(self.staging_dir).resolve()
        script = (staging / self.install_script).resolve()

        # Validate script path to prevent running anything outside the staging dir
        if staging not in script.parents:
            raise ExtractionError(f"Install script path is outside the staging directory: {script}")
        if not script.is_file():
            raise ExtractionError(f"Install script not found in package: {self.install_script}")

        current_mode = script.stat().st_mode
        os.chmod(script, current_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    async def extract(self, package_path: str) -> Path:
        """
        Extract package_path into the staging directory.

        Returns:
            Path: The install entry point inside the staging directory

        Raises:
            ExtractionError: If extraction fails or the entry point is absent
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._extract, str(package_path))

    async def install(self, package_path: str):
        """
        Extract and install a verified package.

        Raises:
            ExtractionError: If the package cannot be unpacked
            InstallationError: If the entry point exits non-zero, with its output attached
        """
        script = await self.extract(package_path)
        logger.info(f"Unzip successful. Running install script {script}...")

        result = await self.runner.run(
            [str(script)],
            cwd=self.staging_dir,
            timeout=self.timeout,
            env={
                'CATOS_STAGING_DIR': str(self.staging_dir),
                'CATOS_PACKAGE_PATH': str(package_path),
            },
        )

        if result.stdout:
            logger.info(f"Installation stdout: {result.stdout.strip()}")
        if result.stderr:
            logger.warning(f"Installation stderr: {result.stderr.strip()}")

        if not result.success:
            output = result.stderr.strip() or result.stdout.strip()
            raise InstallationError(
                f"Update installation failed with exit code {result.returncode}: {output}",
                returncode=result.returncode,
                output=output,
            )

        logger.info("Update installed successfully, cleaning up")
        self.cleanup(package_path)

    def cleanup(self, package_path: str):
        for path in (self.staging_dir, str(package_path)):
            try:
                remove_path(path)
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")
