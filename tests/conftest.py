import posixpath

import pytest

import config
from auth import Identity
from errors import RemoteNotFoundError, RemoteTransportError, RemoteWriteError
from metadata_store import DocumentStore


class FakeRemoteStore:
    """In-memory stand-in for FtpStore with the same path and error semantics"""

    WRITE_OPS = {'upload', 'append', 'rename', 'mkdir', 'remove'}

    def __init__(self, block_size=4):
        self.files = {}
        self.dirs = set()
        self.block_size = block_size
        self.fail_ops = set()
        self.calls = []

    # helpers ---------------------------------------------------------

    def _check(self, op, path):
        self.calls.append((op, path))
        if op in self.fail_ops:
            error_cls = RemoteWriteError if op in self.WRITE_OPS else RemoteTransportError
            raise error_cls(f'{op} {path} failed: injected')

    def _add_parents(self, path):
        parent = posixpath.dirname(path)
        while parent:
            self.dirs.add(parent)
            parent = posixpath.dirname(parent)

    def _children(self, directory):
        prefix = directory.rstrip('/') + '/'
        return ([p for p in self.files if p.startswith(prefix)],
                [d for d in self.dirs if d.startswith(prefix)])

    def put(self, path, data):
        self._add_parents(path)
        self.files[path] = data

    # FtpStore surface --------------------------------------------------

    def upload(self, local_source, remote_path):
        self._check('upload', remote_path)
        if hasattr(local_source, 'read'):
            data = local_source.read()
        else:
            with open(local_source, 'rb') as fh:
                data = fh.read()
        self.put(remote_path, data)

    def upload_buffer(self, data, remote_path):
        self._check('upload', remote_path)
        self.put(remote_path, bytes(data))

    def append_buffer(self, data, remote_path):
        self._check('append', remote_path)
        self.put(remote_path, self.files.get(remote_path, b'') + bytes(data))

    def rename(self, from_path, to_path):
        self._check('rename', from_path)
        if from_path in self.files:
            self.put(to_path, self.files.pop(from_path))
            return

        child_files, child_dirs = self._children(from_path)
        if from_path not in self.dirs and not child_files:
            raise RemoteNotFoundError(f'{from_path} not found on remote store')

        self._add_parents(to_path)
        self.dirs.discard(from_path)
        self.dirs.add(to_path)
        for d in child_dirs:
            self.dirs.discard(d)
            self.dirs.add(to_path + d[len(from_path):])
        for p in child_files:
            self.files[to_path + p[len(from_path):]] = self.files.pop(p)

    def mkdir(self, remote_dir):
        self._check('mkdir', remote_dir)
        self._add_parents(remote_dir + '/x')

    def rmdir(self, remote_dir):
        self.calls.append(('rmdir', remote_dir))
        child_files, child_dirs = self._children(remote_dir)
        if remote_dir not in self.dirs or child_files or child_dirs:
            return False
        self.dirs.discard(remote_dir)
        return True

    def remove(self, remote_path):
        self._check('remove', remote_path)
        return self.files.pop(remote_path, None) is not None

    def size(self, remote_path):
        self._check('size', remote_path)
        if remote_path not in self.files:
            raise RemoteNotFoundError(f'{remote_path} not found on remote store')
        return len(self.files[remote_path])

    def exists(self, remote_path):
        try:
            self.size(remote_path)
            return True
        except RemoteNotFoundError:
            return False

    def download(self, remote_path, local_destination):
        data = self.download_buffer(remote_path)
        with open(local_destination, 'wb') as fh:
            fh.write(data)

    def download_buffer(self, remote_path):
        self._check('download', remote_path)
        if remote_path not in self.files:
            raise RemoteNotFoundError(f'{remote_path} not found on remote store')
        return self.files[remote_path]

    def stream_download(self, remote_path, start_at=0, max_bytes=None):
        self._check('stream', remote_path)
        if remote_path not in self.files:
            raise RemoteNotFoundError(f'{remote_path} not found on remote store')
        data = self.files[remote_path][start_at:]
        if max_bytes:
            data = data[:max_bytes]
        for i in range(0, len(data), self.block_size):
            yield data[i:i + self.block_size]


@pytest.fixture(autouse=True)
def scratch_dir(tmp_path, monkeypatch):
    scratch = tmp_path / 'scratch'
    monkeypatch.setattr(config, 'SCRATCH_DIR', str(scratch))
    monkeypatch.setattr(config, 'ASSEMBLY_MODE', 'local')
    return scratch


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def metadata():
    return DocumentStore()


@pytest.fixture
def admin():
    return Identity(uid='admin-uid', email='admin@example.com', role='admin')


@pytest.fixture
def user():
    return Identity(uid='user-uid', email='jane.doe@example.com', role='user')


@pytest.fixture
def other_user():
    return Identity(uid='other-uid', email='bob@example.com', role='user')


@pytest.fixture
def flask_app(monkeypatch, metadata, remote):
    import app as app_module

    monkeypatch.setattr(app_module, 'metadata', metadata)
    monkeypatch.setattr(app_module, 'remote', remote)
    app_module.app.config.update(TESTING=True)
    return app_module.app


def _client_for(flask_app, identity):
    client = flask_app.test_client()
    with client.session_transaction() as sess:
        sess['uid'] = identity.uid
        sess['email'] = identity.email
        sess['role'] = identity.role
    return client


@pytest.fixture
def admin_client(flask_app, admin):
    return _client_for(flask_app, admin)


@pytest.fixture
def user_client(flask_app, user):
    return _client_for(flask_app, user)


@pytest.fixture
def anon_client(flask_app):
    return flask_app.test_client()
