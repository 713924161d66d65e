"""
Tests for the update session state machine.
"""

import os
import asyncio

import pytest

from catos_updater.updater.errors import (
    ChecksumMismatchError,
    DownloadError,
    InstallationError,
    NetworkError,
    NoUpdatePendingError,
    SessionBusyError,
)
from catos_updater.updater.events import EVENT_PROGRESS, EVENT_STATE
from catos_updater.updater.manifest import PackageRef
from catos_updater.updater.orchestrator import UpdateOrchestrator, UpdateState, create_orchestrator
from catos_updater.updater.privilege import SudoRunner

from conftest import FakeRunner


@pytest.fixture
def orchestrator(updater_config, fake_runner):
    orchestrator = create_orchestrator(updater_config)
    orchestrator.installer.runner = fake_runner
    return orchestrator


def collect_events(orchestrator):
    events = []
    orchestrator.events.add_listener(events.append)
    return events


def state_trail(events):
    return [event.state for event in events if event.kind == EVENT_STATE]


class TestCheck:

    @pytest.mark.integration
    async def test_update_available(self, orchestrator, update_server, make_package):
        update_server.publish('1.3.0', make_package(), notes='Faster purring')

        result = await orchestrator.check_for_updates()

        assert result.update_available
        assert result.current_version == '1.2.0'
        assert result.latest_version == '1.3.0'
        assert orchestrator.state == UpdateState.UPDATE_AVAILABLE
        assert orchestrator.session.package.filename == 'update.zip'

    @pytest.mark.integration
    async def test_up_to_date_returns_to_idle(self, orchestrator, update_server, make_package):
        update_server.publish('1.2', make_package())
        events = collect_events(orchestrator)

        result = await orchestrator.check_for_updates()

        assert not result.update_available
        assert orchestrator.state == UpdateState.IDLE
        assert state_trail(events) == ['checking', 'up_to_date', 'idle']

    @pytest.mark.integration
    async def test_repeated_checks_are_identical(self, orchestrator, update_server, make_package):
        update_server.publish('1.3.0', make_package())

        first = await orchestrator.check_for_updates()
        second = await orchestrator.check_for_updates()

        assert first == second
        assert orchestrator.state == UpdateState.UPDATE_AVAILABLE

    @pytest.mark.integration
    async def test_concurrent_checks_share_one_request(self, orchestrator, update_server, make_package):
        update_server.publish('1.3.0', make_package())

        first, second = await asyncio.gather(
            orchestrator.check_for_updates(),
            orchestrator.check_for_updates(),
        )

        assert first == second
        assert update_server.manifest_requests == 1

    @pytest.mark.integration
    async def test_failed_check_goes_to_failed(self, orchestrator, update_server):
        update_server.manifest_status = 503

        with pytest.raises(NetworkError):
            await orchestrator.check_for_updates()

        assert orchestrator.state == UpdateState.FAILED
        assert orchestrator.get_status()['session']['error']['code'] == 'network_error'

    @pytest.mark.integration
    async def test_check_needs_dismiss_after_failure(self, orchestrator, update_server, make_package):
        update_server.manifest_status = 503
        with pytest.raises(NetworkError):
            await orchestrator.check_for_updates()

        with pytest.raises(SessionBusyError):
            await orchestrator.check_for_updates()

        orchestrator.dismiss()
        update_server.manifest_status = 200
        update_server.publish('1.3.0', make_package())
        result = await orchestrator.check_for_updates()
        assert result.update_available


class TestDownloadAndInstall:

    @pytest.mark.integration
    async def test_end_to_end_completes(self, orchestrator, update_server, make_package, fake_runner,
                                        updater_config):
        update_server.publish('1.3.0', make_package())
        events = collect_events(orchestrator)

        await orchestrator.check_for_updates()
        session = await orchestrator.download_and_install()

        assert session.state == UpdateState.COMPLETED
        assert orchestrator.state == UpdateState.COMPLETED
        assert session.finished_at is not None
        assert state_trail(events) == [
            'checking', 'update_available', 'downloading', 'verifying', 'installing', 'completed',
        ]

        [call] = fake_runner.calls
        assert call['argv'][0].endswith('scripts/install_update.sh')

        progress = [event for event in events if event.kind == EVENT_PROGRESS]
        assert progress[-1].final
        assert progress[-1].percent == 100

        assert not os.path.exists(updater_config['download_dir'])
        assert not os.path.exists(updater_config['staging_dir'])

    @pytest.mark.integration
    async def test_checksum_mismatch_fails_and_deletes_package(self, orchestrator, update_server,
                                                                make_package, fake_runner, tmp_path):
        update_server.publish('1.3.0', make_package(), sha256sum='0' * 64)
        await orchestrator.check_for_updates()

        with pytest.raises(ChecksumMismatchError):
            await orchestrator.download_and_install()

        assert orchestrator.state == UpdateState.FAILED
        assert isinstance(orchestrator.session.error, ChecksumMismatchError)
        assert not (tmp_path / 'downloads' / 'update.zip').exists()
        assert fake_runner.calls == []

    @pytest.mark.integration
    async def test_download_failure(self, orchestrator, update_server, make_package):
        update_server.publish('1.3.0', make_package())
        update_server.packages.clear()
        await orchestrator.check_for_updates()

        with pytest.raises(DownloadError):
            await orchestrator.download_and_install()

        assert orchestrator.state == UpdateState.FAILED

    @pytest.mark.integration
    async def test_install_failure_keeps_artifacts(self, orchestrator, update_server, make_package,
                                                   updater_config):
        orchestrator.installer.runner = FakeRunner(returncode=1, stderr='no space left on device')
        update_server.publish('1.3.0', make_package())
        await orchestrator.check_for_updates()

        with pytest.raises(InstallationError):
            await orchestrator.download_and_install()

        error = orchestrator.get_status()['session']['error']
        assert error['code'] == 'installation_error'
        assert error['output'] == 'no space left on device'
        assert orchestrator.session.package_path is not None
        assert os.path.exists(orchestrator.session.package_path)
        assert os.path.exists(updater_config['staging_dir'])

    @pytest.mark.integration
    async def test_second_install_is_rejected(self, orchestrator, update_server, make_package):
        update_server.publish('1.3.0', make_package())
        await orchestrator.check_for_updates()

        task = orchestrator.start_download_and_install()
        with pytest.raises(SessionBusyError):
            await orchestrator.download_and_install()
        with pytest.raises(SessionBusyError):
            await orchestrator.check_for_updates()

        await task
        assert orchestrator.state == UpdateState.COMPLETED

    @pytest.mark.unit
    async def test_install_without_available_update(self, orchestrator):
        with pytest.raises(NoUpdatePendingError):
            await orchestrator.download_and_install()

        assert orchestrator.state == UpdateState.IDLE

    @pytest.mark.integration
    async def test_explicit_package_overrides_checked_one(self, orchestrator, update_server, make_package,
                                                          sha256):
        data = make_package({'extra.txt': 'other build'})
        update_server.publish('1.3.0', make_package())
        update_server.packages['other.zip'] = data
        await orchestrator.check_for_updates()

        session = await orchestrator.download_and_install(PackageRef('other.zip', sha256(data)))

        assert session.state == UpdateState.COMPLETED
        assert session.package.filename == 'other.zip'

    @pytest.mark.integration
    async def test_completed_requires_dismiss(self, orchestrator, update_server, make_package):
        update_server.publish('1.3.0', make_package())
        await orchestrator.check_for_updates()
        await orchestrator.download_and_install()

        with pytest.raises(SessionBusyError):
            await orchestrator.check_for_updates()

        orchestrator.dismiss()
        assert orchestrator.state == UpdateState.IDLE
        assert orchestrator.session is None


class TestPostInstallCheck:

    @pytest.mark.integration
    async def test_version_file_mismatch_fails(self, updater_config, update_server, make_package, fake_runner):
        orchestrator = create_orchestrator({**updater_config, 'post_install_check': 'version_file'})
        orchestrator.installer.runner = fake_runner
        update_server.publish('1.3.0', make_package())
        await orchestrator.check_for_updates()

        with pytest.raises(InstallationError):
            await orchestrator.download_and_install()

        assert orchestrator.state == UpdateState.FAILED

    @pytest.mark.integration
    async def test_version_file_updated_by_installer(self, updater_config, update_server, make_package,
                                                     version_file):
        class VersionWritingRunner(FakeRunner):
            async def run(self, argv, cwd=None, timeout=None, env=None):
                version_file.write_text('1.3.0\n')
                return await super().run(argv, cwd, timeout, env)

        orchestrator = create_orchestrator({**updater_config, 'post_install_check': 'version_file'})
        orchestrator.installer.runner = VersionWritingRunner()
        update_server.publish('1.3.0', make_package())
        await orchestrator.check_for_updates()

        session = await orchestrator.download_and_install()

        assert session.state == UpdateState.COMPLETED
        assert orchestrator.get_current_version() == '1.3.0'

    @pytest.mark.unit
    def test_unknown_check_rejected(self, orchestrator):
        with pytest.raises(ValueError):
            UpdateOrchestrator(
                orchestrator.checker,
                orchestrator.downloader,
                orchestrator.installer,
                orchestrator.version_reader,
                orchestrator.download_base_url,
                post_install_check='reboot',
            )


class TestCreateOrchestrator:

    @pytest.mark.unit
    def test_wires_configuration(self, updater_config):
        orchestrator = create_orchestrator({**updater_config, 'privilege_strategy': 'sudo'})

        assert orchestrator.get_current_version() == '1.2.0'
        assert orchestrator.downloader.download_dir == updater_config['download_dir']
        assert orchestrator.downloader.chunk_size == 1024
        assert orchestrator.installer.staging_dir == updater_config['staging_dir']
        assert isinstance(orchestrator.installer.runner, SudoRunner)
        assert orchestrator.state == UpdateState.IDLE
        assert orchestrator.get_status() == {'state': 'idle', 'session': None}
