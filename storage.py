"""
Chunked upload assembly.

Two modes, picked by config.ASSEMBLY_MODE:

local   chunks land in SCRATCH_DIR as {uploadId}-chunk-{i}; finalize
        concatenates them into assemble-tmp/ and uploads the result once.
remote  no persistent local disk. Every chunk is stored as a remote artifact
        _chunks/{uploadId}/chunk-{i}, then artifacts are appended in index
        order to _assembling/{uploadId}.bin. Chunks that arrive ahead of a
        gap stay as artifacts until the gap is filled, so submission order
        does not matter. Finalize renames the assembling file into place.
"""

import glob
import logging
import os
import shutil
import threading
import time
from datetime import datetime, timedelta, timezone

import config
from errors import (AccessDeniedError, ChunkTooLargeError, MissingChunkError, NotFoundError, RemoteError,
                    RemoteNotFoundError, ValidationError)
from models import FileRecord, clean_description, file_category, now_ms, utc_now
from paths import (file_url, resolve_folder_path, sanitize_email, sanitize_filename,
                   sanitize_service, sanitize_upload_id)
from proxy import guess_mime_type

DOCUMENT_TYPES = {
    'application/pdf',
    'application/msword',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'application/vnd.ms-excel',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    'application/vnd.ms-powerpoint',
    'application/vnd.openxmlformats-officedocument.presentationml.presentation',
    'text/plain',
    'text/csv',
}

SESSIONS = 'uploadSessions'

_locks_guard = threading.Lock()
_upload_locks = {}


def _upload_lock(upload_id):
    with _locks_guard:
        return _upload_locks.setdefault(upload_id, threading.Lock())


def _forget_upload_lock(upload_id):
    with _locks_guard:
        _upload_locks.pop(upload_id, None)


def safe_remove_file(file_path):
    try:
        if os.path.exists(file_path):
            os.remove(file_path)
        return True
    except OSError as e:
        print(f"❌ Error removing file {file_path}: {e}")
        return False


# ----------------------------------------------------------------------
# Naming
# ----------------------------------------------------------------------

def is_allowed_mime(mime_type, role):
    mime_type = (mime_type or '').lower()
    if mime_type.startswith(('image/', 'audio/', 'video/')):
        return True
    return role == 'admin' and mime_type in DOCUMENT_TYPES


def build_final_name(service_category, file_name):
    return f'{sanitize_service(service_category)}_{now_ms()}-{sanitize_filename(file_name)}'


def chunk_artifact_path(upload_id, chunk_index):
    return f'_chunks/{sanitize_upload_id(upload_id)}/chunk-{chunk_index}'


def assembling_path(upload_id):
    return f'_assembling/{sanitize_upload_id(upload_id)}.bin'


def local_chunk_path(upload_id, chunk_index):
    return os.path.join(config.SCRATCH_DIR, f'{sanitize_upload_id(upload_id)}-chunk-{chunk_index}')


def check_folder_access(metadata, identity, folder_id):
    folder = metadata.collection('folders').get(folder_id)
    if folder is None:
        raise NotFoundError('Folder not found.')
    if not identity.can_modify(folder.get('createdBy')):
        raise AccessDeniedError('You do not have access to this folder.')


def resolve_upload_destination(metadata, identity, folder_id, final_name):
    """Remote path for a new upload, checking the target folder when one is given"""
    if folder_id:
        check_folder_access(metadata, identity, folder_id)
        folder_path = resolve_folder_path(metadata, folder_id)
        if folder_path:
            return f'{folder_path}/{final_name}'
    return f'{sanitize_email(identity.email)}/{final_name}'


def record_uploaded_file(metadata, identity, original_name, saved_as, storage_path, size, mime_type,
                         service_category=None, folder_id=None, description='',
                         source_type='file', source_url=None, category=None):
    record = FileRecord(
        originalName=original_name,
        savedAs=saved_as,
        storagePath=storage_path,
        url=file_url(storage_path),
        size=size,
        type=mime_type,
        fileCategory=category or file_category(mime_type),
        uploadedBy=identity.uid,
        uploadedByEmail=identity.email or '',
        uploadedAt=utc_now(),
        status='pending',
        description=description or '',
        serviceCategory=service_category or '',
        sourceType=source_type,
        sourceUrl=source_url,
        folderId=folder_id or None,
    )
    record.id = metadata.collection('files').add(record.to_doc())
    return record


def _parse_index(value, field):
    try:
        index = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer.')
    if index < 0:
        raise ValidationError(f'{field} must not be negative.')
    return index


# ----------------------------------------------------------------------
# Receiving chunks
# ----------------------------------------------------------------------

def receive_chunk(metadata, remote, upload_id, chunk_index, data):
    """Store one chunk. Returns True when it was a duplicate resubmission."""
    if not upload_id or not sanitize_upload_id(upload_id):
        raise ValidationError('Missing uploadId or chunkIndex.')
    chunk_index = _parse_index(chunk_index, 'chunkIndex')
    if data is None:
        raise ValidationError('No chunk received.')
    if len(data) > config.CHUNK_SIZE:
        raise ChunkTooLargeError(f'Chunk exceeds the {config.CHUNK_SIZE} byte limit.')

    if config.ASSEMBLY_MODE == 'remote':
        return _receive_remote_chunk(metadata, remote, upload_id, chunk_index, data)

    os.makedirs(config.SCRATCH_DIR, exist_ok=True)
    chunk_path = local_chunk_path(upload_id, chunk_index)
    tmp_path = f'{chunk_path}.part'
    with open(tmp_path, 'wb') as f:
        f.write(data)
    os.replace(tmp_path, chunk_path)
    return False


def _receive_remote_chunk(metadata, remote, upload_id, chunk_index, data):
    artifact = chunk_artifact_path(upload_id, chunk_index)
    if remote.exists(artifact):
        print(f"♻️ Chunk {chunk_index} of {upload_id} already stored, skipping")
        _drain_remote_chunks(metadata, remote, upload_id)
        return True

    remote.upload_buffer(data, artifact)
    _drain_remote_chunks(metadata, remote, upload_id, incoming=(chunk_index, data))
    return False


def _drain_remote_chunks(metadata, remote, upload_id, incoming=None):
    """
    Append every consecutive stored chunk, starting at the session's
    `appended` counter, to the assembling file. Returns the new counter.

    The session also records `assembledSize`, the byte length the assembling
    file must have. An append that wrote its bytes but then failed leaves the
    file longer than that, so it is rebuilt from the artifacts before the next
    append.
    """
    key = sanitize_upload_id(upload_id)
    sessions = metadata.collection(SESSIONS)
    target = assembling_path(upload_id)

    with _upload_lock(key):
        session = sessions.get(key)
        if session is None:
            session = {'uploadId': key, 'appended': 0, 'assembledSize': 0, 'createdAt': utc_now()}
            sessions.set(key, dict(session, updatedAt=utc_now()))
        appended = session.get('appended', 0)
        expected = session.get('assembledSize', 0)
        if incoming is not None and incoming[0] > session.get('highestChunk', -1):
            sessions.update(key, {'highestChunk': incoming[0]})

        while True:
            if incoming is not None and incoming[0] == appended:
                data = incoming[1]
            else:
                artifact = chunk_artifact_path(upload_id, appended)
                if not remote.exists(artifact):
                    break
                data = remote.download_buffer(artifact)

            if appended == 0:
                remote.upload_buffer(data, target)
            else:
                if _assembled_size(remote, target) != expected:
                    expected = _rebuild_assembly(remote, upload_id, appended)
                remote.append_buffer(data, target)
            appended += 1
            expected += len(data)
            sessions.update(key, {'appended': appended, 'assembledSize': expected, 'updatedAt': utc_now()})

        return appended


def _assembled_size(remote, target):
    try:
        return remote.size(target)
    except RemoteNotFoundError:
        return -1


def _rebuild_assembly(remote, upload_id, count):
    """Rewrite the assembling file from chunk artifacts 0..count-1; returns its size"""
    target = assembling_path(upload_id)
    logging.warning(f"[upload] {target} does not match its recorded size, rebuilding from {count} chunks")
    size = 0
    for i in range(count):
        data = remote.download_buffer(chunk_artifact_path(upload_id, i))
        if i == 0:
            remote.upload_buffer(data, target)
        else:
            remote.append_buffer(data, target)
        size += len(data)
    return size


# ----------------------------------------------------------------------
# Finalize
# ----------------------------------------------------------------------

def finalize_upload(metadata, remote, identity, upload_id, file_name, total_chunks, mime_type,
                    service_category=None, folder_id=None, description=''):
    """Assemble all chunks, place the file on the remote store and record it"""
    if not upload_id or not file_name or not total_chunks:
        raise ValidationError('Missing required fields.')
    total_chunks = _parse_index(total_chunks, 'totalChunks')
    if total_chunks == 0:
        raise ValidationError('totalChunks must be at least 1.')
    mime_type = mime_type or guess_mime_type(file_name)
    if not is_allowed_mime(mime_type, identity.role):
        raise ValidationError(f'File type "{mime_type}" is not allowed.')
    description = clean_description(description)

    final_name = build_final_name(service_category, file_name)
    storage_path = resolve_upload_destination(metadata, identity, folder_id, final_name)

    print(f"🔨 Finalizing {file_name} ({total_chunks} chunks, mode={config.ASSEMBLY_MODE}) -> {storage_path}")
    if config.ASSEMBLY_MODE == 'remote':
        size = _finalize_remote(metadata, remote, upload_id, total_chunks, storage_path)
    else:
        size = _finalize_local(remote, upload_id, total_chunks, final_name, storage_path)

    record = record_uploaded_file(metadata, identity, file_name, final_name, storage_path, size,
                                  mime_type, service_category, folder_id, description)
    print(f"✅ Upload complete: {file_name} ({size} bytes) as {record.id}")
    return record


def _finalize_local(remote, upload_id, total_chunks, final_name, storage_path):
    chunk_paths = []
    for i in range(total_chunks):
        chunk_path = local_chunk_path(upload_id, i)
        if not os.path.exists(chunk_path):
            raise MissingChunkError(i)
        chunk_paths.append(chunk_path)

    assemble_dir = os.path.join(config.SCRATCH_DIR, 'assemble-tmp')
    os.makedirs(assemble_dir, exist_ok=True)
    final_local = os.path.join(assemble_dir, final_name)

    try:
        with open(final_local, 'wb') as outfile:
            for chunk_path in chunk_paths:
                with open(chunk_path, 'rb') as infile:
                    shutil.copyfileobj(infile, outfile, 1024 * 1024)
        size = os.path.getsize(final_local)
        remote.upload(final_local, storage_path)
    finally:
        safe_remove_file(final_local)

    # Only now: a failed upload leaves the chunks for a retried finalize
    for chunk_path in chunk_paths:
        safe_remove_file(chunk_path)
    return size


def _finalize_remote(metadata, remote, upload_id, total_chunks, storage_path):
    appended = _drain_remote_chunks(metadata, remote, upload_id)

    expected = 0
    for i in range(total_chunks):
        try:
            expected += remote.size(chunk_artifact_path(upload_id, i))
        except RemoteNotFoundError:
            raise MissingChunkError(i)
    if appended < total_chunks:
        raise MissingChunkError(appended)
    if appended > total_chunks:
        raise ValidationError(f'Received {appended} chunks but totalChunks is {total_chunks}.')

    key = sanitize_upload_id(upload_id)
    target = assembling_path(upload_id)
    with _upload_lock(key):
        size = _assembled_size(remote, target)
        if size != expected:
            size = _rebuild_assembly(remote, upload_id, total_chunks)
        remote.rename(target, storage_path)

    _remove_remote_artifacts(remote, upload_id, total_chunks)
    metadata.collection(SESSIONS).delete(key)
    _forget_upload_lock(key)
    return size


def _remove_remote_artifacts(remote, upload_id, count):
    for i in range(count):
        artifact = chunk_artifact_path(upload_id, i)
        try:
            remote.remove(artifact)
        except RemoteError as e:
            logging.warning(f"[upload] could not delete chunk artifact {artifact}: {e}")
    remote.rmdir(f'_chunks/{sanitize_upload_id(upload_id)}')


# ----------------------------------------------------------------------
# Direct upload / cancel / cleanup
# ----------------------------------------------------------------------

class _CountingReader:
    def __init__(self, stream):
        self._stream = stream
        self.count = 0

    def read(self, size=-1):
        data = self._stream.read(size)
        self.count += len(data)
        return data


def store_direct_upload(metadata, remote, identity, stream, file_name, mime_type=None,
                        service_category=None, folder_id=None, description=''):
    """Single-request upload streamed straight to the remote store"""
    if not file_name:
        raise ValidationError('No file provided.')
    mime_type = mime_type or guess_mime_type(file_name)
    if not is_allowed_mime(mime_type, identity.role):
        raise ValidationError(f'File type "{mime_type}" is not allowed.')
    description = clean_description(description)

    final_name = build_final_name(service_category, file_name)
    storage_path = resolve_upload_destination(metadata, identity, folder_id, final_name)

    reader = _CountingReader(stream)
    remote.upload(reader, storage_path)
    print(f"📤 Direct upload stored: {storage_path} ({reader.count} bytes)")

    return record_uploaded_file(metadata, identity, file_name, final_name, storage_path, reader.count,
                                mime_type, service_category, folder_id, description)


def cancel_upload(metadata, remote, upload_id, total_chunks=None):
    """Drop every artifact of an abandoned upload session"""
    key = sanitize_upload_id(upload_id)
    if not key:
        raise ValidationError('uploadId is required.')

    if config.ASSEMBLY_MODE == 'remote':
        sessions = metadata.collection(SESSIONS)
        with _upload_lock(key):
            session = sessions.get(key) or {}
            received = session.get('highestChunk', -1) + 1
            count = max(session.get('appended', 0), received, int(total_chunks or 0))
            _remove_remote_artifacts(remote, upload_id, count)
            remote.remove(assembling_path(upload_id))
            sessions.delete(key)
        _forget_upload_lock(key)
        removed = count
    else:
        removed = 0
        for chunk_path in glob.glob(os.path.join(glob.escape(config.SCRATCH_DIR), f'{glob.escape(key)}-chunk-*')):
            if safe_remove_file(chunk_path):
                removed += 1

    print(f"🗑️ Upload {key} cancelled ({removed} chunk artifacts removed)")
    return removed


def cleanup_old_chunks(max_age_seconds=None):
    """Remove abandoned scratch artifacts older than max_age_seconds (local mode)"""
    max_age_seconds = config.CHUNK_MAX_AGE if max_age_seconds is None else max_age_seconds
    scratch = config.SCRATCH_DIR
    if not os.path.isdir(scratch):
        return 0

    cutoff = time.time() - max_age_seconds
    candidates = glob.glob(os.path.join(glob.escape(scratch), '*-chunk-*'))
    candidates += glob.glob(os.path.join(glob.escape(scratch), 'assemble-tmp', '*'))

    cleaned = 0
    for path in candidates:
        try:
            if os.path.isfile(path) and os.path.getmtime(path) < cutoff:
                os.remove(path)
                cleaned += 1
        except OSError as e:
            logging.warning(f"[cleanup] could not remove {path}: {e}")

    if cleaned:
        print(f"🧹 Chunk cleanup completed: {cleaned} stale artifacts removed")
    return cleaned


def cleanup_stale_upload_sessions(metadata, remote, max_age_seconds=None):
    """Cancel remote-mode upload sessions that have been idle for max_age_seconds"""
    max_age_seconds = config.CHUNK_MAX_AGE if max_age_seconds is None else max_age_seconds
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)

    cleaned = 0
    for doc in metadata.collection(SESSIONS).stream():
        try:
            last_seen = datetime.fromisoformat(doc.get('updatedAt') or doc.get('createdAt'))
        except (TypeError, ValueError):
            last_seen = None
        if last_seen is not None and last_seen > cutoff:
            continue
        try:
            cancel_upload(metadata, remote, doc.id)
            cleaned += 1
        except RemoteError as e:
            logging.warning(f"[cleanup] could not drop upload session {doc.id}: {e}")

    if cleaned:
        print(f"🧹 Upload session cleanup completed: {cleaned} stale sessions removed")
    return cleaned
