"""
Streaming file proxy: serves remote objects over HTTP with byte-range support.

Range policy: an explicit end is honored (clamped to EOF); open-ended and
over-long requests are capped at RANGE_CHUNK_SIZE per response, and
Content-Range always reports the span actually served. Players simply ask
for the next range.
"""

import logging
import posixpath
import re
from dataclasses import dataclass
from urllib.parse import quote, unquote

from flask import Response

import config
from errors import NotFoundError, RemoteError

MIME_TYPES = {
    '.jpg': 'image/jpeg', '.jpeg': 'image/jpeg', '.jfif': 'image/jpeg',
    '.png': 'image/png', '.gif': 'image/gif', '.webp': 'image/webp',
    '.bmp': 'image/bmp', '.svg': 'image/svg+xml', '.avif': 'image/avif',
    '.heic': 'image/heic', '.heif': 'image/heif',
    '.mp3': 'audio/mpeg', '.wav': 'audio/wav', '.ogg': 'audio/ogg', '.aac': 'audio/aac',
    '.flac': 'audio/flac', '.m4a': 'audio/mp4', '.opus': 'audio/opus',
    '.mp4': 'video/mp4', '.webm': 'video/webm', '.mov': 'video/quicktime',
    '.avi': 'video/x-msvideo', '.mkv': 'video/x-matroska',
    '.wmv': 'video/x-ms-wmv', '.m4v': 'video/mp4',
    '.pdf': 'application/pdf',
    '.doc': 'application/msword',
    '.docx': 'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    '.xls': 'application/vnd.ms-excel',
    '.xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    '.ppt': 'application/vnd.ms-powerpoint',
    '.pptx': 'application/vnd.openxmlformats-officedocument.presentationml.presentation',
    '.txt': 'text/plain', '.csv': 'text/csv',
}

_RANGE_SPEC = re.compile(r'^\s*(\d*)\s*-\s*(\d*)\s*$')


def guess_mime_type(name):
    ext = posixpath.splitext((name or '').lower())[1]
    return MIME_TYPES.get(ext, 'application/octet-stream')


class RangeNotSatisfiable(ValueError):
    pass


@dataclass
class ByteRange:
    start: int
    end: int

    @property
    def length(self):
        return self.end - self.start + 1


@dataclass
class StreamState:
    """Whether the status line and headers already went out for this response"""
    path: str
    headers_sent: bool = False
    bytes_sent: int = 0


def normalize_request_path(raw_path):
    """
    Decode and collapse a client supplied path. Leading traversal
    segments are dropped; returns None when nothing addressable remains.
    """
    decoded = unquote(raw_path or '').replace('\\', '/')
    if '\x00' in decoded:
        return None
    normalized = posixpath.normpath('/' + decoded).lstrip('/')
    if not normalized or normalized == '.':
        return None
    return normalized


def parse_range(header, size, cap=None):
    """
    Parse a Range header against a resource of `size` bytes.
    Returns None when the header is absent or malformed (serve the whole
    file), a ByteRange otherwise; raises RangeNotSatisfiable for 416.
    Only the first range of a multi-range request is honored.
    """
    if not header:
        return None
    cap = cap or config.RANGE_CHUNK_SIZE

    unit, sep, spec = header.partition('=')
    if unit.strip().lower() != 'bytes' or not sep:
        return None
    match = _RANGE_SPEC.match(spec.split(',')[0])
    if not match:
        return None
    start_text, end_text = match.groups()
    if not start_text and not end_text:
        return None

    if not start_text:
        suffix = int(end_text)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(header)
        start = max(size - suffix, 0)
        end = size - 1
    else:
        start = int(start_text)
        end = int(end_text) if end_text else size - 1
        if start >= size or start > end:
            raise RangeNotSatisfiable(header)
        end = min(end, size - 1)

    return ByteRange(start, min(end, start + cap - 1))


def can_read_path(metadata, identity, storage_path):
    if identity.is_admin:
        return True
    matches = (metadata.collection('files')
               .where('storagePath', '==', storage_path)
               .where('uploadedBy', '==', identity.uid)
               .limit(1)
               .get())
    return bool(matches)


def _content_disposition(name, download):
    kind = 'attachment' if download else 'inline'
    fallback = name.encode('ascii', 'replace').decode('ascii').replace('"', '_')
    return f"{kind}; filename=\"{fallback}\"; filename*=UTF-8''{quote(name)}"


def _stream_body(remote, state, start, length):
    # The WSGI server only pulls the body after start_response has run
    state.headers_sent = True
    try:
        for block in remote.stream_download(state.path, start_at=start, max_bytes=length):
            state.bytes_sent += len(block)
            yield block
    except RemoteError as e:
        logging.error(f"[proxy] {state.path}: stream aborted after {state.bytes_sent} bytes: {e.message}")


def serve_file(metadata, remote, identity, raw_path, range_header=None, download=False):
    storage_path = normalize_request_path(raw_path)
    if storage_path is None:
        raise NotFoundError('File not found')
    if not can_read_path(metadata, identity, storage_path):
        raise NotFoundError('File not found')

    # RemoteNotFoundError surfaces as 404 from here
    size = remote.size(storage_path)
    name = posixpath.basename(storage_path)
    headers = {
        'Accept-Ranges': 'bytes',
        'Content-Disposition': _content_disposition(name, download),
        'Cache-Control': 'private, max-age=0',
        'X-Accel-Buffering': 'no',
    }

    try:
        byte_range = parse_range(range_header, size)
    except RangeNotSatisfiable:
        headers['Content-Range'] = f'bytes */{size}'
        return Response(status=416, headers=headers)

    state = StreamState(path=storage_path)
    if byte_range is None:
        status, start, length = 200, 0, None
        headers['Content-Length'] = str(size)
    else:
        status, start, length = 206, byte_range.start, byte_range.length
        headers['Content-Range'] = f'bytes {byte_range.start}-{byte_range.end}/{size}'
        headers['Content-Length'] = str(length)

    if size == 0:
        return Response(b'', status=status, mimetype=guess_mime_type(name), headers=headers)

    return Response(
        _stream_body(remote, state, start, length),
        status=status,
        mimetype=guess_mime_type(name),
        headers=headers,
        direct_passthrough=True,
    )
