"""
Import a file from a URL. Video-platform pages are saved as embed-only
records; anything else is fetched with requests, staged in scratch and
uploaded to the owner's remote namespace.
"""

import logging
import os
import posixpath
import tempfile
from urllib.parse import unquote, urlparse

import requests

import config
from errors import ValidationError
from models import clean_description
from proxy import guess_mime_type
import storage

VIDEO_PLATFORM_HOSTS = (
    'youtube.com', 'youtu.be', 'vimeo.com', 'facebook.com', 'fb.watch',
    'tiktok.com', 'dailymotion.com', 'dai.ly', 'instagram.com', 'twitter.com', 'x.com',
)


def is_video_platform_url(url):
    host = (urlparse(url).hostname or '').lower()
    return any(host == h or host.endswith('.' + h) for h in VIDEO_PLATFORM_HOSTS)


def _validate_url(url):
    url = (url or '').strip()
    if not url:
        raise ValidationError('URL is required.')
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        raise ValidationError('Only http(s) URLs can be imported.')
    return url


def _save_embed(metadata, identity, url, custom_name, description, service_category, folder_id):
    display_name = (custom_name or '').strip() or url
    record = storage.record_uploaded_file(
        metadata, identity, display_name, None, None, 0, None,
        service_category=service_category, folder_id=folder_id, description=description,
        source_type='url', source_url=url, category='Video',
    )
    print(f"🔗 Saved embedded link {url} as {record.id}")
    return record


def _fetch_to_scratch(url):
    """Stream the response body into a scratch file; returns (path, content type, original name)"""
    try:
        response = requests.get(url, stream=True, timeout=config.URL_FETCH_TIMEOUT, allow_redirects=True)
    except requests.RequestException as e:
        raise ValidationError(f'Failed to download: {e}') from e

    with response:
        if not response.ok:
            raise ValidationError(f'Failed to download: {response.status_code} {response.reason}')

        content_type = (response.headers.get('Content-Type') or 'application/octet-stream').split(';')[0].strip()
        if content_type == 'text/html':
            raise ValidationError('The URL returned an HTML page instead of a media file. '
                                  'Use a direct link to the file.')

        original_name = unquote(posixpath.basename(urlparse(response.url or url).path)) or 'downloaded-file'

        os.makedirs(config.SCRATCH_DIR, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='url-', dir=config.SCRATCH_DIR)
        received = 0
        try:
            with os.fdopen(fd, 'wb') as out:
                for block in response.iter_content(chunk_size=config.STREAM_BLOCK_SIZE):
                    received += len(block)
                    if received > config.MAX_CONTENT_LENGTH:
                        raise ValidationError('Remote file is too large.')
                    out.write(block)
        except BaseException:
            storage.safe_remove_file(tmp_path)
            raise

    return tmp_path, content_type, original_name


def import_from_url(metadata, remote, identity, url, custom_name=None, description='',
                    service_category=None, folder_id=None):
    url = _validate_url(url)
    description = clean_description(description)
    folder_id = folder_id or None

    if is_video_platform_url(url):
        # Platform download tooling is not part of this service
        if folder_id:
            storage.check_folder_access(metadata, identity, folder_id)
        return _save_embed(metadata, identity, url, custom_name, description, service_category, folder_id)

    tmp_path, content_type, original_name = _fetch_to_scratch(url)
    try:
        if content_type == 'application/octet-stream':
            content_type = guess_mime_type(original_name)
        if not storage.is_allowed_mime(content_type, identity.role):
            raise ValidationError(f'File type "{content_type}" is not allowed.')

        final_name = storage.build_final_name(service_category, original_name)
        storage_path = storage.resolve_upload_destination(metadata, identity, folder_id, final_name)
        size = os.path.getsize(tmp_path)
        remote.upload(tmp_path, storage_path)
    finally:
        storage.safe_remove_file(tmp_path)

    display_name = (custom_name or '').strip() or original_name
    record = storage.record_uploaded_file(
        metadata, identity, display_name, final_name, storage_path, size, content_type,
        service_category=service_category, folder_id=folder_id, description=description,
        source_type='url', source_url=url,
    )
    logging.info(f"URL import {url} stored at {storage_path} ({size} bytes)")
    print(f"🌐 Imported {url} -> {storage_path} ({size} bytes)")
    return record
