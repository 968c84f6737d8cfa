"""
Streaming ZIP downloads of remote objects. Entries are fed straight from
FtpStore.stream_download so nothing is staged on local disk.
"""

import logging
import posixpath
import re
import time

import zipstream

from errors import AccessDeniedError, NotFoundError, RemoteError, RemoteNotFoundError, ValidationError
from models import FileRecord


def _entry_name(record, used):
    remote_path = record.storagePath or record.savedAs or ''
    name = (record.originalName or posixpath.basename(remote_path) or 'file').replace('/', '_').replace('\\', '_')
    if name not in used:
        used.add(name)
        return name

    stem, ext = posixpath.splitext(name)
    n = 1
    while f'{stem} ({n}){ext}' in used:
        n += 1
    unique = f'{stem} ({n}){ext}'
    used.add(unique)
    return unique


def _guarded(remote, remote_path, arcname):
    """Feed one entry; a remote failure mid-entry truncates that entry and is logged"""
    try:
        yield from remote.stream_download(remote_path)
    except RemoteError as e:
        logging.error(f"[zip] entry {arcname} from {remote_path} aborted: {e}")


def build_zip(remote, records):
    """Return (zipstream.ZipFile, entry count) for the records that still exist remotely"""
    zf = zipstream.ZipFile(mode='w', compression=zipstream.ZIP_DEFLATED, allowZip64=True)
    used = set()
    added = 0
    for record in records:
        remote_path = record.storagePath or record.savedAs
        if not remote_path:
            continue
        try:
            remote.size(remote_path)
        except RemoteNotFoundError:
            logging.warning(f"[zip] skipping missing object {remote_path}")
            continue
        arcname = _entry_name(record, used)
        zf.write_iter(arcname, _guarded(remote, remote_path, arcname))
        added += 1
    print(f"📦 ZIP stream prepared with {added} entries")
    return zf, added


def files_for_bulk_download(metadata, identity, file_ids):
    if not isinstance(file_ids, list) or not file_ids:
        raise ValidationError('fileIds array is required.')

    files = metadata.collection('files')
    records = []
    for file_id in file_ids:
        doc = files.get(file_id)
        if doc is not None:
            records.append(FileRecord.from_doc(file_id, doc))
    if not records:
        raise NotFoundError('No files found.')
    if not identity.is_admin and any(r.uploadedBy != identity.uid for r in records):
        raise AccessDeniedError('Access denied to one or more files.')
    return records


def files_for_folder_download(metadata, identity, folder_id):
    """Files directly in folder_id; regular users only get their own"""
    query = metadata.collection('files').where('folderId', '==', folder_id)
    if not identity.is_admin:
        query = query.where('uploadedBy', '==', identity.uid)
    records = [FileRecord.from_doc(doc.id, doc.data) for doc in query.get()]
    if not records:
        raise NotFoundError('No files in this folder.')

    folder = metadata.collection('folders').get(folder_id) or {}
    safe_name = re.sub(r'[^a-zA-Z0-9_-]', '_', folder.get('name') or 'folder')
    return records, f'{safe_name}-{int(time.time() * 1000)}.zip'


def bulk_zip_name():
    return f'scribestore-files-{int(time.time() * 1000)}.zip'
