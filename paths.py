"""
Canonical remote paths for folders and files.

Layout on the remote store (relative to FTP_BASE_PATH):
    {ownerNamespace}/{Folder}/{SubFolder}/.../{savedAs}   files inside folders
    {ownerNamespace}/{savedAs}                              files at the root

ownerNamespace is the sanitized local part of the root ancestor folder
creator's email, or of the uploader's email for root files.
"""

import posixpath
import re
from collections import deque
from urllib.parse import quote

from models import FileRecord, Folder, utc_now

_UNSAFE_NAME_CHARS = re.compile(r'[^a-zA-Z0-9 _\-().]')
_UNSAFE_EMAIL_CHARS = re.compile(r'[^a-zA-Z0-9._-]')
_UNSAFE_ID_CHARS = re.compile(r'[^a-zA-Z0-9_-]')
_REPEATED_UNDERSCORES = re.compile(r'_+')


def sanitize_name(name):
    """Make a user supplied name safe to use as one remote path component"""
    safe = _UNSAFE_NAME_CHARS.sub('_', name or '')
    safe = _REPEATED_UNDERSCORES.sub('_', safe).strip()
    if not safe or set(safe) == {'.'}:
        return 'Untitled'
    return safe


def sanitize_filename(name):
    safe = sanitize_name(name)
    safe = re.sub(r'[ ()]', '_', safe)
    return _REPEATED_UNDERSCORES.sub('_', safe)


def sanitize_email(email):
    local_part = (email or 'unknown').split('@')[0] or 'unknown'
    safe = _REPEATED_UNDERSCORES.sub('_', _UNSAFE_EMAIL_CHARS.sub('_', local_part))
    if not safe or set(safe) == {'.'}:
        return 'unknown'
    return safe


def sanitize_upload_id(upload_id):
    return _UNSAFE_ID_CHARS.sub('_', str(upload_id or ''))


def sanitize_service(service_category):
    return _UNSAFE_ID_CHARS.sub('_', service_category or 'Uncategorized')


def encode_storage_url(storage_path):
    """Percent-encode each segment of a remote path, keeping the slashes"""
    return '/'.join(quote(segment, safe="!'()*~") for segment in storage_path.split('/'))


def file_url(storage_path):
    if not storage_path:
        return None
    return f'/api/files/{encode_storage_url(storage_path)}'


def file_basename(file):
    return file.savedAs or posixpath.basename(file.storagePath or '')


def _load_folder(metadata, folder_id):
    doc = metadata.collection('folders').get(folder_id)
    return Folder.from_doc(folder_id, doc) if doc is not None else None


def resolve_folder_path(metadata, folder_id):
    """
    Walk the parentId chain up to the root and return
    '{ownerNamespace}/{Root}/.../{Folder}', or '' for the root (None).
    """
    if not folder_id:
        return ''

    parts = []
    root_email = ''
    visited = set()
    current_id = folder_id
    while current_id:
        if current_id in visited:
            break  # corrupt chain, stop instead of looping forever
        visited.add(current_id)
        folder = _load_folder(metadata, current_id)
        if folder is None:
            break
        parts.append(sanitize_name(folder.name))
        # The last folder visited is the root ancestor
        root_email = folder.createdByEmail or root_email
        current_id = folder.parentId

    if not parts:
        return ''
    parts.reverse()
    return '/'.join([sanitize_email(root_email)] + parts)


def compute_file_remote_path(metadata, file, target_folder_id):
    """Where the file's bytes belong once it lives in target_folder_id (None = root)"""
    file_name = file_basename(file)
    if not file_name:
        return file.storagePath or ''

    owner_dir = sanitize_email(file.uploadedByEmail)
    if not target_folder_id:
        if file.originalStoragePath:
            return file.originalStoragePath
        if not file.folderId and file.storagePath:
            return file.storagePath
        return f'{owner_dir}/{file_name}'

    folder_path = resolve_folder_path(metadata, target_folder_id)
    if not folder_path:
        return f'{owner_dir}/{file_name}'
    return f'{folder_path}/{file_name}'


def collect_descendant_folder_ids(metadata, folder_id):
    """All folders below folder_id, breadth-first, excluding folder_id itself"""
    folders = metadata.collection('folders')
    ids = []
    seen = {folder_id}
    queue = deque([folder_id])
    while queue:
        current = queue.popleft()
        for doc in folders.where('parentId', '==', current).get():
            if doc.id in seen:
                continue
            seen.add(doc.id)
            ids.append(doc.id)
            queue.append(doc.id)
    return ids


def propagate_descendant_paths(metadata, folder_id):
    """
    Rewrite storagePath/url of every file in folder_id and its descendants
    from the current folder chain. Metadata only: the remote directory is
    expected to have been renamed already.

    Records flagged reconciliationPending are left alone; their storagePath
    is where the bytes actually are, not where the folder chain says.
    """
    files = metadata.collection('files')
    updated = 0
    for fid in [folder_id] + collect_descendant_folder_ids(metadata, folder_id):
        folder_path = resolve_folder_path(metadata, fid)
        batch = metadata.batch()
        for doc in files.where('folderId', '==', fid).get():
            record = FileRecord.from_doc(doc.id, doc.data)
            file_name = file_basename(record)
            if not file_name or record.reconciliationPending:
                continue
            new_path = f'{folder_path}/{file_name}' if folder_path else file_name
            if new_path == record.storagePath:
                continue
            batch.update(files, doc.id, {
                'storagePath': new_path,
                'url': file_url(new_path),
                'updatedAt': utc_now(),
            })
        updated += batch.commit()
    return updated


def rebase_pending_paths(metadata, old_dir, new_dir):
    """
    A remote directory moved from old_dir to new_dir: follow it with every
    reconciliationPending record whose bytes lived below old_dir.
    """
    files = metadata.collection('files')
    prefix = old_dir.rstrip('/') + '/'
    batch = metadata.batch()
    for doc in files.where('reconciliationPending', '==', True).get():
        current = doc.get('storagePath') or ''
        if not current.startswith(prefix):
            continue
        new_path = f"{new_dir.rstrip('/')}/{current[len(prefix):]}"
        batch.update(files, doc.id, {
            'storagePath': new_path,
            'url': file_url(new_path),
            'updatedAt': utc_now(),
        })
    return batch.commit()
