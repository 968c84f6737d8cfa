"""
Remote file store backed by an FTPS server.

Every operation opens its own authenticated session and closes it when the
operation finishes or fails, so no session state is shared between requests.
All paths are relative to the configured base directory.
"""

import ftplib
import io
import logging
import os
import posixpath
import ssl
from contextlib import contextmanager

import config
from errors import RemoteNotFoundError, RemoteTransportError, RemoteWriteError


class ImplicitFTP_TLS(ftplib.FTP_TLS):
    """FTP_TLS variant that wraps the control socket as soon as it connects (port 990 servers)"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._sock = None

    @property
    def sock(self):
        return self._sock

    @sock.setter
    def sock(self, value):
        if value is not None and not isinstance(value, ssl.SSLSocket):
            value = self.context.wrap_socket(value, server_hostname=self.host)
        self._sock = value


def _is_missing(err):
    return str(err)[:3] == '550'


class FtpStore:
    def __init__(self, host, user, password, port=21, base_path='uploads', tls_mode='explicit',
                 verify_tls=True, timeout=60, block_size=64 * 1024, connection_factory=None):
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.base_path = (base_path or '').rstrip('/')
        self.tls_mode = tls_mode
        self.verify_tls = verify_tls
        self.timeout = timeout
        self.block_size = block_size
        self._connection_factory = connection_factory

    @classmethod
    def from_config(cls):
        return cls(
            host=config.FTP_HOST,
            user=config.FTP_USER,
            password=config.FTP_PASS,
            port=config.FTP_PORT,
            base_path=config.FTP_BASE_PATH,
            tls_mode=config.FTP_TLS_MODE,
            verify_tls=config.FTP_TLS_VERIFY,
            timeout=config.FTP_TIMEOUT,
            block_size=config.STREAM_BLOCK_SIZE,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _ssl_context(self):
        context = ssl.create_default_context()
        if not self.verify_tls:
            # Shared hosting often presents the provider's wildcard certificate
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _new_connection(self):
        if self._connection_factory is not None:
            return self._connection_factory()
        if self.tls_mode == 'implicit':
            return ImplicitFTP_TLS(context=self._ssl_context(), timeout=self.timeout)
        if self.tls_mode == 'none':
            return ftplib.FTP(timeout=self.timeout)
        return ftplib.FTP_TLS(context=self._ssl_context(), timeout=self.timeout)

    def _connect(self):
        if not self.host and self._connection_factory is None:
            raise RemoteTransportError('FTP host is not configured')

        conn = self._new_connection()
        try:
            conn.connect(self.host, self.port)
            conn.login(self.user, self.password)
            if isinstance(conn, ftplib.FTP_TLS):
                conn.prot_p()
            return conn
        except ftplib.all_errors as e:
            conn.close()
            raise RemoteTransportError(f'FTP connection to {self.host} failed: {e}') from e

    @staticmethod
    def _close(conn):
        try:
            conn.quit()
        except ftplib.all_errors:
            conn.close()

    @contextmanager
    def session(self):
        """One authenticated session, always closed afterwards"""
        conn = self._connect()
        try:
            yield conn
        finally:
            self._close(conn)

    @contextmanager
    def _errors(self, action, remote_path, write=False, missing_is_not_found=True):
        try:
            yield
        except RemoteNotFoundError:
            raise
        except RemoteTransportError as e:
            if write and not isinstance(e, RemoteWriteError):
                raise RemoteWriteError(f'{action} {remote_path} failed: {e.message}') from e
            raise
        except ftplib.error_perm as e:
            if missing_is_not_found and _is_missing(e):
                raise RemoteNotFoundError(f'{remote_path} not found on remote store') from e
            error_cls = RemoteWriteError if write else RemoteTransportError
            raise error_cls(f'{action} {remote_path} failed: {e}') from e
        except ftplib.all_errors as e:
            error_cls = RemoteWriteError if write else RemoteTransportError
            raise error_cls(f'{action} {remote_path} failed: {e}') from e

    def _full(self, remote_path):
        rel = (remote_path or '').replace('\\', '/').lstrip('/')
        if not self.base_path:
            return rel
        return posixpath.join(self.base_path, rel) if rel else self.base_path

    @staticmethod
    def _ensure_dir(conn, directory):
        """Create every missing component of directory (like mkdir -p)"""
        if not directory or directory in ('.', '/'):
            return
        prefix = '/' if directory.startswith('/') else ''
        current = ''
        for part in directory.strip('/').split('/'):
            current = f'{current}/{part}' if current else part
            try:
                conn.mkd(prefix + current)
            except ftplib.error_perm:
                pass  # already exists

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upload(self, local_source, remote_path):
        """Upload a local file path or a readable binary file object"""
        full = self._full(remote_path)
        with self._errors('Upload', remote_path, write=True, missing_is_not_found=False):
            with self.session() as conn:
                self._ensure_dir(conn, posixpath.dirname(full))
                if hasattr(local_source, 'read'):
                    conn.storbinary(f'STOR {full}', local_source, blocksize=self.block_size)
                else:
                    with open(local_source, 'rb') as fh:
                        conn.storbinary(f'STOR {full}', fh, blocksize=self.block_size)

    def upload_buffer(self, data, remote_path):
        self.upload(io.BytesIO(data), remote_path)

    def append_buffer(self, data, remote_path):
        """Append bytes at EOF of remote_path, creating it if needed"""
        full = self._full(remote_path)
        with self._errors('Append', remote_path, write=True, missing_is_not_found=False):
            with self.session() as conn:
                self._ensure_dir(conn, posixpath.dirname(full))
                conn.storbinary(f'APPE {full}', io.BytesIO(data), blocksize=self.block_size)

    def rename(self, from_path, to_path):
        """Move a file or a directory; the destination parent is created first"""
        from_full = self._full(from_path)
        to_full = self._full(to_path)
        with self._errors('Rename', from_path, write=True):
            with self.session() as conn:
                self._ensure_dir(conn, posixpath.dirname(to_full))
                conn.rename(from_full, to_full)

    def mkdir(self, remote_dir):
        with self._errors('Mkdir', remote_dir, write=True, missing_is_not_found=False):
            with self.session() as conn:
                self._ensure_dir(conn, self._full(remote_dir))

    def rmdir(self, remote_dir):
        """Remove an empty directory. Failures are logged, never raised."""
        try:
            with self._errors('Rmdir', remote_dir):
                with self.session() as conn:
                    conn.rmd(self._full(remote_dir))
            return True
        except (RemoteNotFoundError, RemoteTransportError) as e:
            logging.warning(f"[ftp] rmdir {remote_dir}: {e.message}")
            return False

    def remove(self, remote_path):
        """Delete a file. A missing file is not an error."""
        try:
            with self._errors('Delete', remote_path):
                with self.session() as conn:
                    conn.delete(self._full(remote_path))
            return True
        except RemoteNotFoundError:
            logging.info(f"[ftp] delete skipped, already gone: {remote_path}")
            return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def size(self, remote_path):
        full = self._full(remote_path)
        with self._errors('Size query', remote_path):
            with self.session() as conn:
                conn.voidcmd('TYPE I')
                size = conn.size(full)
        if size is None:
            raise RemoteNotFoundError(f'{remote_path} not found on remote store')
        return size

    def exists(self, remote_path):
        """True when a size query succeeds; transport errors propagate"""
        try:
            self.size(remote_path)
            return True
        except RemoteNotFoundError:
            return False

    def download(self, remote_path, local_destination):
        full = self._full(remote_path)
        try:
            with self._errors('Download', remote_path):
                with self.session() as conn, open(local_destination, 'wb') as fh:
                    conn.retrbinary(f'RETR {full}', fh.write, blocksize=self.block_size)
        except (RemoteNotFoundError, RemoteTransportError):
            if os.path.exists(local_destination):
                os.remove(local_destination)
            raise

    def download_buffer(self, remote_path):
        """Read a small remote object fully into memory"""
        buffer = io.BytesIO()
        full = self._full(remote_path)
        with self._errors('Download', remote_path):
            with self.session() as conn:
                conn.retrbinary(f'RETR {full}', buffer.write, blocksize=self.block_size)
        return buffer.getvalue()

    def stream_download(self, remote_path, start_at=0, max_bytes=None):
        """
        Yield the bytes of remote_path starting at start_at, stopping after
        max_bytes when given. The session is closed when the generator is
        exhausted or closed early (e.g. the HTTP client went away).
        """
        full = self._full(remote_path)
        with self._errors('Stream', remote_path):
            conn = self._connect()
            data_sock = None
            finished = False
            try:
                conn.voidcmd('TYPE I')
                data_sock = conn.transfercmd(f'RETR {full}', rest=start_at or None)
                remaining = max_bytes if max_bytes and max_bytes > 0 else None
                while remaining is None or remaining > 0:
                    want = self.block_size if remaining is None else min(self.block_size, remaining)
                    block = data_sock.recv(want)
                    if not block:
                        finished = True
                        break
                    if remaining is not None:
                        remaining -= len(block)
                    yield block

                if finished:
                    if isinstance(data_sock, ssl.SSLSocket):
                        try:
                            data_sock.unwrap()
                        except (OSError, ValueError):
                            pass
                    data_sock.close()
                    data_sock = None
                    conn.voidresp()
            finally:
                if data_sock is not None:
                    data_sock.close()
                if finished:
                    self._close(conn)
                else:
                    # Aborted transfer: the control channel is mid-reply, just drop it
                    conn.close()
