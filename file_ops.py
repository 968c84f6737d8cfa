"""
File metadata operations: listing, moving between folders, renaming,
descriptions, transcription status, deletes and their bulk variants.

Moves and renames are metadata-first: when the remote step fails the
metadata change still commits, a warning is logged and the record is
flagged reconciliationPending for the sweep to repair.
"""

import logging
import posixpath
import re

from errors import AccessDeniedError, NotFoundError, RemoteError, ServiceError, ValidationError
from models import STATUSES, FileRecord, clean_description, now_ms, utc_now
from paths import (compute_file_remote_path, file_basename, file_url, sanitize_filename,
                   sanitize_name)
import storage

FILES = 'files'

# "{Service}_{epochMillis}-" or a bare "{epochMillis}-" at the start of savedAs
_UNIQUE_PREFIX = re.compile(r'^((?:[^/]*?_)?\d{10,}-)')

ANY_FOLDER = object()


def get_file(metadata, file_id):
    doc = metadata.collection(FILES).get(file_id)
    if doc is None:
        raise NotFoundError('File not found.')
    return FileRecord.from_doc(file_id, doc)


def _require_owner(identity, record, message='Access denied.'):
    if not identity.can_modify(record.uploadedBy):
        raise AccessDeniedError(message)


def _require_file_ids(file_ids):
    if not isinstance(file_ids, list) or not file_ids:
        raise ValidationError('fileIds array is required.')
    return file_ids


def _check_target_folder(metadata, identity, folder_id):
    if not folder_id:
        return
    folder = metadata.collection('folders').get(folder_id)
    if folder is None:
        raise NotFoundError('Folder not found.')
    if not identity.can_modify(folder.get('createdBy')):
        raise AccessDeniedError('Access denied to target folder.')


def list_files(metadata, identity, status=None, folder_id=ANY_FOLDER):
    """Role-scoped listing, newest upload first"""
    query = metadata.collection(FILES).query()
    if not identity.is_admin:
        query = query.where('uploadedBy', '==', identity.uid)
    if status:
        query = query.where('status', '==', status)
    if folder_id is not ANY_FOLDER:
        query = query.where('folderId', '==', folder_id or None)

    records = [FileRecord.from_doc(doc.id, doc.data) for doc in query.get()]
    records.sort(key=lambda r: r.uploadedAt or '', reverse=True)
    return records


def create_file_metadata(metadata, identity, payload):
    """Register a record for an object whose basename the client already knows"""
    original_name = (payload.get('originalName') or '').strip()
    saved_as = payload.get('savedAs') or ''
    if not original_name or not saved_as:
        raise ValidationError('Missing required fields.')
    if sanitize_name(saved_as) != saved_as or '/' in saved_as:
        raise ValidationError('savedAs is not a safe remote file name.')

    folder_id = payload.get('folderId') or None
    storage_path = storage.resolve_upload_destination(metadata, identity, folder_id, saved_as)
    mime_type = payload.get('type') or 'application/octet-stream'
    return storage.record_uploaded_file(
        metadata, identity, original_name, saved_as, storage_path,
        int(payload.get('size') or 0), mime_type,
        service_category=payload.get('serviceCategory'),
        folder_id=folder_id,
        description=clean_description(payload.get('description')),
        source_type=payload.get('sourceType') or 'file',
        source_url=payload.get('sourceUrl'),
    )


def relocate_file(metadata, remote, record, target_folder_id):
    """
    Put the file's bytes where target_folder_id says they belong and record
    the new folder. Remote failures leave storagePath pointing at the old
    (still valid) location and flag the record.
    """
    target_folder_id = target_folder_id or None
    old_path = record.storagePath or record.savedAs
    update = {'folderId': target_folder_id, 'updatedAt': utc_now()}

    if old_path:
        # Remember where a root file lived so moving it back restores that path
        if not record.folderId and target_folder_id and record.storagePath and not record.originalStoragePath:
            update['originalStoragePath'] = record.storagePath

        new_path = compute_file_remote_path(metadata, record, target_folder_id)
        if new_path and new_path != old_path:
            try:
                remote.rename(old_path, new_path)
            except RemoteError as e:
                logging.warning(f"[ftp] move of {old_path} -> {new_path} failed, deferring to reconciliation: {e}")
                update['reconciliationPending'] = True
            else:
                update.update(storagePath=new_path, url=file_url(new_path), reconciliationPending=False)
        else:
            update['reconciliationPending'] = False

    metadata.collection(FILES).update(record.id, update)
    for field, value in update.items():
        setattr(record, field, value)
    return record


def move_file(metadata, remote, identity, file_id, folder_id):
    record = get_file(metadata, file_id)
    _require_owner(identity, record)
    _check_target_folder(metadata, identity, folder_id)
    if (record.folderId or None) == (folder_id or None) and not record.reconciliationPending:
        return record
    return relocate_file(metadata, remote, record, folder_id)


def renamed_basename(saved_as, new_display_name):
    """Keep the unique '{Service}_{millis}-' prefix and the extension, swap the readable part"""
    match = _UNIQUE_PREFIX.match(saved_as or '')
    prefix = match.group(1) if match else f'{now_ms()}-'
    ext = posixpath.splitext(saved_as or '')[1]
    safe = sanitize_filename(new_display_name)
    if ext and not safe.lower().endswith(ext.lower()):
        safe += ext
    return f'{prefix}{safe}'


def rename_file(metadata, remote, identity, file_id, name):
    new_display_name = (name or '').strip()
    if not new_display_name:
        raise ValidationError('Name is required.')

    record = get_file(metadata, file_id)
    _require_owner(identity, record, 'You can only rename your own files.')

    update = {'originalName': new_display_name, 'updatedAt': utc_now()}
    old_path = record.storagePath or record.savedAs
    if old_path:
        new_base = renamed_basename(file_basename(record), new_display_name)
        directory = posixpath.dirname(old_path)
        new_path = f'{directory}/{new_base}' if directory else new_base
        if new_path != old_path:
            try:
                remote.rename(old_path, new_path)
            except RemoteError as e:
                logging.warning(f"[ftp] rename of {old_path} failed, keeping old remote name: {e}")
            else:
                update.update(savedAs=new_base, storagePath=new_path, url=file_url(new_path))
                if record.originalStoragePath:
                    original_dir = posixpath.dirname(record.originalStoragePath)
                    update['originalStoragePath'] = f'{original_dir}/{new_base}' if original_dir else new_base

    metadata.collection(FILES).update(file_id, update)
    for field, value in update.items():
        setattr(record, field, value)
    return record


def update_description(metadata, identity, file_id, description):
    description = clean_description(description if isinstance(description, str) else '')
    record = get_file(metadata, file_id)
    _require_owner(identity, record)
    metadata.collection(FILES).update(file_id, {'description': description, 'updatedAt': utc_now()})
    return description


def _validate_status(status):
    if status not in STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(STATUSES)}")
    return status


def set_status(metadata, identity, file_id, status):
    _validate_status(status)
    get_file(metadata, file_id)
    if not identity.is_admin:
        raise AccessDeniedError('Admin access required to change status.')
    metadata.collection(FILES).update(file_id, {'status': status, 'updatedAt': utc_now()})


def delete_file(metadata, remote, identity, file_id):
    """Remote object first (a missing object is fine), then the record"""
    record = get_file(metadata, file_id)
    _require_owner(identity, record, 'You can only delete your own files.')

    remote_path = record.storagePath or record.savedAs
    if remote_path:
        remote.remove(remote_path)
    metadata.collection(FILES).delete(file_id)
    print(f"🗑️ Deleted {remote_path or file_id}")


# ----------------------------------------------------------------------
# Bulk variants: per-item, skip on failure, report counts
# ----------------------------------------------------------------------

def bulk_move(metadata, remote, identity, file_ids, folder_id):
    _require_file_ids(file_ids)
    _check_target_folder(metadata, identity, folder_id)

    moved = skipped = 0
    for file_id in file_ids:
        try:
            move_file(metadata, remote, identity, file_id, folder_id)
            moved += 1
        except ServiceError as e:
            logging.warning(f"[bulk-move] skipped {file_id}: {e.message}")
            skipped += 1
    return {'moved': moved, 'skipped': skipped}


def bulk_delete(metadata, remote, identity, file_ids):
    _require_file_ids(file_ids)

    deleted = skipped = 0
    for file_id in file_ids:
        try:
            delete_file(metadata, remote, identity, file_id)
            deleted += 1
        except ServiceError as e:
            logging.warning(f"[bulk-delete] skipped {file_id}: {e.message}")
            skipped += 1
    return {'deleted': deleted, 'skipped': skipped}


def bulk_status(metadata, identity, file_ids, status):
    _require_file_ids(file_ids)
    _validate_status(status)
    if not identity.is_admin:
        raise AccessDeniedError('Admin access required to change status.')

    updated = skipped = 0
    for file_id in file_ids:
        try:
            set_status(metadata, identity, file_id, status)
            updated += 1
        except ServiceError as e:
            logging.warning(f"[bulk-status] skipped {file_id}: {e.message}")
            skipped += 1
    return {'updated': updated, 'skipped': skipped}
