"""
Privileged command execution strategies.

The installer only needs "run this argument vector with elevated rights and
give me the exit status and output". How elevation happens depends on the
deployment, so it is a pluggable strategy. None of the strategies assume an
interactive terminal: stdin is closed and sudo runs with -n.
"""

import os
import signal
import asyncio
import logging
import tempfile
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 5


@dataclass
class ExecResult:
    returncode: int
    stdout: str = ''
    stderr: str = ''

    @property
    def success(self) -> bool:
        return self.returncode == 0


class PrivilegedRunner:
    """Base strategy: runs the command as the current user."""

    name = 'direct'

    def build_command(self, argv: List[str]) -> List[str]:
        return list(argv)

    async def run(
        self,
        argv: List[str],
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None
    ) -> ExecResult:
        """
        Run a command and capture its output.

        Args:
            argv: Command and arguments as list
            cwd: Working directory
            timeout: Seconds before the process is killed
            env: Extra environment variables

        Returns:
            ExecResult: Exit status with decoded stdout/stderr. A timeout or a
            missing executable is reported as a failed result, not raised.
        """
        cmd = self.build_command(argv)

        run_env = os.environ.copy()
        if env:
            run_env.update(env)

        logger.info(f"Running privileged command via {self.name}: {' '.join(cmd)}")

        # Output goes to files rather than pipes: a daemon started by the
        # script inherits the descriptors and would hold a pipe open forever.
        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    cwd=cwd,
                    env=run_env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    start_new_session=True,
                )
            except FileNotFoundError:
                logger.error(f"Command not found: {cmd[0]}")
                return ExecResult(127, '', f"Command not found: {cmd[0]}")
            except OSError as e:
                logger.error(f"Error running command {' '.join(cmd)}: {e}")
                return ExecResult(126, '', str(e))

            timed_out = False
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                logger.error(f"Command timed out: {' '.join(cmd)}")
                await self._kill_group(proc)

            stdout = _read_output(out)
            stderr = _read_output(err)

        if timed_out:
            return ExecResult(-1, stdout, stderr + f"\nCommand timed out after {timeout} seconds")

        result = ExecResult(proc.returncode, stdout, stderr)
        if not result.success:
            logger.warning(f"Command {' '.join(cmd)} returned code {result.returncode}")
        return result

    @staticmethod
    async def _kill_group(proc):
        """SIGKILL the command's whole process group, then wait a bounded time for it to exit."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Members running as root cannot be signalled from here
            logger.warning(f"Not permitted to kill process group {proc.pid}, killing the leader only")
            try:
                proc.kill()
            except (ProcessLookupError, PermissionError) as e:
                logger.warning(f"Could not kill process {proc.pid}: {e}")

        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.error(f"Process {proc.pid} still running {KILL_GRACE_SECONDS}s after SIGKILL, abandoning it")


def _read_output(f) -> str:
    f.seek(0)
    return f.read().decode('utf-8', errors='replace')


class DirectRunner(PrivilegedRunner):
    """Already root, or running inside a pre-authorized service."""

    name = 'direct'


class SudoRunner(PrivilegedRunner):
    """
    Non-interactive sudo. Requires a sudoers rule such as:
        catos-updater ALL=(root) NOPASSWD: /tmp/catos_update_temp/scripts/install_update.sh
    """

    name = 'sudo'

    def build_command(self, argv: List[str]) -> List[str]:
        return ['sudo', '-n', '--', *argv]


class PkexecRunner(PrivilegedRunner):
    """Elevation through a polkit authentication agent."""

    name = 'pkexec'

    def build_command(self, argv: List[str]) -> List[str]:
        return ['pkexec', *argv]


_RUNNERS = {
    'direct': DirectRunner,
    'sudo': SudoRunner,
    'pkexec': PkexecRunner,
}


def get_privileged_runner(strategy: str = 'auto') -> PrivilegedRunner:
    """
    Get a runner for the configured strategy.

    Args:
        strategy: 'auto', 'direct', 'sudo' or 'pkexec'. 'auto' runs directly
            when the process is already root and uses sudo otherwise.

    Raises:
        ValueError: For unknown strategies
    """
    if strategy == 'auto':
        strategy = 'direct' if os.geteuid() == 0 else 'sudo'

    try:
        return _RUNNERS[strategy]()
    except KeyError:
        raise ValueError(f"Unknown privilege strategy: {strategy}")
