"""
Shared fixtures for update client tests.

Provides:
- Update packages built in memory (zip with an install script)
- A local aiohttp server playing the update CDN
- A fake privileged runner that records what it was asked to run
"""

import io
import json
import hashlib
import zipfile

import pytest
from aiohttp import web

from catos_updater import config_loader
from catos_updater.updater.privilege import ExecResult, PrivilegedRunner


INSTALL_SCRIPT_OK = "#!/bin/sh\necho installing from \"$CATOS_STAGING_DIR\"\nexit 0\n"


def build_package(files=None, script=INSTALL_SCRIPT_OK):
    """Build a zip package; the install script gets executable permissions."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        if script is not None:
            info = zipfile.ZipInfo('scripts/install_update.sh')
            info.external_attr = (0o100755 << 16)
            archive.writestr(info, script)
        for name, content in (files or {}).items():
            archive.writestr(name, content)
    return buffer.getvalue()


def sha256_hex(data):
    return hashlib.sha256(data).hexdigest()


class FakeRunner(PrivilegedRunner):
    """Records argv instead of running anything."""

    name = 'fake'

    def __init__(self, returncode=0, stdout='', stderr=''):
        self.calls = []
        self.result = ExecResult(returncode, stdout, stderr)

    async def run(self, argv, cwd=None, timeout=None, env=None):
        self.calls.append({'argv': list(argv), 'cwd': cwd, 'timeout': timeout, 'env': env})
        return self.result


class UpdateServer:
    """Mutable description of what the fake CDN serves."""

    def __init__(self):
        self.manifest = None
        self.manifest_status = 200
        self.manifest_body = None
        self.packages = {}
        self.send_length = True
        self.truncate_at = None
        self.manifest_requests = 0
        self.server = None

    def url(self, path=''):
        return str(self.server.make_url('/cat-os-update/' + path))

    def publish(self, version, data, filename='update.zip', sha256sum=None, notes='Bug fixes'):
        self.packages[filename] = data
        self.manifest = {
            'latest_version': version,
            'release_notes': notes,
            'update_package': {
                'filename': filename,
                'sha256sum': sha256sum or sha256_hex(data),
            },
        }


@pytest.fixture
async def update_server(aiohttp_server):
    state = UpdateServer()

    async def manifest(request):
        state.manifest_requests += 1
        if state.manifest_status != 200:
            return web.Response(status=state.manifest_status, text='nope')
        body = state.manifest_body if state.manifest_body is not None else json.dumps(state.manifest)
        if isinstance(body, str):
            body = body.encode('utf-8')
        # Served as text/plain like a static host would
        return web.Response(body=body, content_type='text/plain')

    async def package(request):
        filename = request.match_info['filename']
        if filename not in state.packages:
            return web.Response(status=404)
        data = state.packages[filename]
        if state.truncate_at is not None:
            response = web.StreamResponse()
            response.content_type = 'application/zip'
            response.content_length = len(data)
            await response.prepare(request)
            await response.write(data[:state.truncate_at])
            # Drop the connection mid-body
            request.transport.close()
            return response

        if state.send_length:
            return web.Response(body=data, content_type='application/zip')

        response = web.StreamResponse()
        response.content_type = 'application/zip'
        response.enable_chunked_encoding()
        await response.prepare(request)
        for start in range(0, len(data), 1024):
            await response.write(data[start:start + 1024])
        await response.write_eof()
        return response

    app = web.Application()
    app.router.add_get('/cat-os-update/update_manifest.json', manifest)
    app.router.add_get('/cat-os-update/{filename}', package)
    state.server = await aiohttp_server(app)
    return state


@pytest.fixture
def version_file(tmp_path):
    path = tmp_path / 'catos-version'
    path.write_text('1.2.0\n', encoding='utf-8')
    return path


@pytest.fixture
def updater_config(tmp_path, update_server, version_file):
    return {
        **config_loader.DEFAULT_UPDATER_CONFIG,
        'manifest_url': update_server.url('update_manifest.json'),
        'download_base_url': update_server.url(),
        'version_file': str(version_file),
        'download_dir': str(tmp_path / 'downloads'),
        'staging_dir': str(tmp_path / 'staging'),
        'privilege_strategy': 'direct',
        'manifest_timeout': 5,
        'download_timeout': 10,
        'install_timeout': 10,
        'chunk_size': 1024,
    }


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point every config file at a temp dir so tests never touch /etc."""
    config_dir = tmp_path / 'etc'
    monkeypatch.setattr(config_loader, 'SYSTEM_CONFIG_PATH', str(config_dir / 'system.json'))
    monkeypatch.setattr(config_loader, 'UPDATER_CONFIG_PATH', str(config_dir / 'updater.json'))
    monkeypatch.setattr(config_loader, 'UPDATE_STATE_PATH', str(config_dir / 'update.json'))
    config_loader.clear_cache()
    yield config_dir
    config_loader.clear_cache()


@pytest.fixture
def make_package():
    return build_package


@pytest.fixture
def sha256():
    return sha256_hex


@pytest.fixture
def fake_runner():
    return FakeRunner()
