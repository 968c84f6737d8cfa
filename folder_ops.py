"""
Folder tree operations. Folders are flat documents linked by parentId; every
operation that changes a folder's remote path renames the remote directory
and then rewrites the recorded paths of all files below it.
"""

import logging

from errors import (AccessDeniedError, CircularReferenceError, FolderConflictError, NotFoundError, RemoteError,
                    ValidationError)
from models import FileRecord, Folder, utc_now
from paths import (collect_descendant_folder_ids, propagate_descendant_paths, rebase_pending_paths,
                   resolve_folder_path, sanitize_email, sanitize_name)
import file_ops

FOLDERS = 'folders'


def get_folder(metadata, folder_id):
    doc = metadata.collection(FOLDERS).get(folder_id)
    if doc is None:
        raise NotFoundError('Folder not found.')
    return Folder.from_doc(folder_id, doc)


def _require_owner(identity, folder, message='Access denied.'):
    if not identity.can_modify(folder.createdBy):
        raise AccessDeniedError(message)


def _clean_name(name):
    name = (name or '').strip() if isinstance(name, str) else ''
    if not name:
        raise ValidationError('Folder name is required.')
    return name


def _reject_sibling_clash(metadata, name, parent_id, owner_email, exclude_id=None):
    """Siblings must not sanitize to the same remote directory name"""
    target = sanitize_name(name)
    for doc in metadata.collection(FOLDERS).where('parentId', '==', parent_id or None).get():
        if doc.id == exclude_id or sanitize_name(doc.get('name')) != target:
            continue
        # Root folders only clash inside the same owner namespace
        if parent_id or sanitize_email(doc.get('createdByEmail')) == sanitize_email(owner_email):
            raise FolderConflictError(f'A folder named "{doc.get("name")}" already exists here.')


def create_folder(metadata, remote, identity, name, parent_id=None):
    name = _clean_name(name)
    if parent_id:
        parent = get_folder(metadata, parent_id)
        _require_owner(identity, parent, 'Access denied to parent folder.')
    _reject_sibling_clash(metadata, name, parent_id, identity.email)

    now = utc_now()
    folder = Folder(
        name=name,
        parentId=parent_id or None,
        createdBy=identity.uid,
        createdByEmail=identity.email or '',
        createdAt=now,
        updatedAt=now,
    )
    folder.id = metadata.collection(FOLDERS).add(folder.to_doc())

    # Best effort: uploads create missing parents on demand anyway
    remote_path = resolve_folder_path(metadata, folder.id)
    if remote_path:
        try:
            remote.mkdir(remote_path)
        except RemoteError as e:
            logging.warning(f"[ftp] mkdir {remote_path} failed: {e}")

    print(f"📁 Folder created: {remote_path or folder.name} ({folder.id})")
    return folder


def list_folders(metadata, identity):
    query = metadata.collection(FOLDERS).query()
    if not identity.is_admin:
        query = query.where('createdBy', '==', identity.uid)
    return [Folder.from_doc(doc.id, doc.data) for doc in query.get()]


def mark_tree_pending(metadata, folder_id):
    """Flag every file at or below folder_id for repair by the reconciliation sweep"""
    files = metadata.collection('files')
    flagged = 0
    for fid in [folder_id] + collect_descendant_folder_ids(metadata, folder_id):
        batch = metadata.batch()
        for doc in files.where('folderId', '==', fid).get():
            batch.update(files, doc.id, {'reconciliationPending': True})
        flagged += batch.commit()
    return flagged


def relocate_folder_dir(metadata, remote, folder_id, old_path, new_path):
    """Rename the remote directory and cascade the new paths to every descendant file"""
    if not old_path or not new_path or old_path == new_path:
        return True
    try:
        remote.rename(old_path, new_path)
    except RemoteError as e:
        flagged = mark_tree_pending(metadata, folder_id)
        logging.warning(f"[ftp] directory move {old_path} -> {new_path} failed, "
                        f"{flagged} files left for reconciliation: {e}")
        return False

    updated = propagate_descendant_paths(metadata, folder_id)
    rebase_pending_paths(metadata, old_path, new_path)
    print(f"📂 Moved {old_path} -> {new_path} ({updated} file paths updated)")
    return True


def rename_folder(metadata, remote, identity, folder_id, name):
    name = _clean_name(name)
    folder = get_folder(metadata, folder_id)
    _require_owner(identity, folder)
    _reject_sibling_clash(metadata, name, folder.parentId, folder.createdByEmail, exclude_id=folder_id)

    old_path = resolve_folder_path(metadata, folder_id)
    metadata.collection(FOLDERS).update(folder_id, {'name': name, 'updatedAt': utc_now()})
    new_path = resolve_folder_path(metadata, folder_id)

    relocate_folder_dir(metadata, remote, folder_id, old_path, new_path)
    return get_folder(metadata, folder_id)


def _reject_cycle(metadata, folder_id, parent_id):
    if parent_id == folder_id:
        raise CircularReferenceError('Cannot move a folder into itself.')

    visited = set()
    current = parent_id
    while current and current not in visited:
        if current == folder_id:
            raise CircularReferenceError('Cannot move a folder into its own descendant.')
        visited.add(current)
        doc = metadata.collection(FOLDERS).get(current)
        if doc is None:
            break
        current = doc.get('parentId')


def move_folder(metadata, remote, identity, folder_id, parent_id):
    parent_id = parent_id or None
    folder = get_folder(metadata, folder_id)
    _require_owner(identity, folder)

    _reject_cycle(metadata, folder_id, parent_id)
    if parent_id:
        parent = get_folder(metadata, parent_id)
        _require_owner(identity, parent, 'Access denied to target folder.')
    _reject_sibling_clash(metadata, folder.name, parent_id, folder.createdByEmail, exclude_id=folder_id)

    old_path = resolve_folder_path(metadata, folder_id)
    metadata.collection(FOLDERS).update(folder_id, {'parentId': parent_id, 'updatedAt': utc_now()})
    new_path = resolve_folder_path(metadata, folder_id)

    relocate_folder_dir(metadata, remote, folder_id, old_path, new_path)
    return get_folder(metadata, folder_id)


def delete_folder(metadata, remote, identity, folder_id):
    """
    Delete a folder without deleting its contents: files and subfolders move
    up to the folder's parent, then the emptied remote directory is removed.
    """
    folder = get_folder(metadata, folder_id)
    _require_owner(identity, folder)
    new_parent = folder.parentId or None
    for sub in metadata.collection(FOLDERS).where('parentId', '==', folder_id).get():
        _reject_sibling_clash(metadata, sub.get('name'), new_parent, sub.get('createdByEmail'))
    folder_path = resolve_folder_path(metadata, folder_id)

    files = metadata.collection('files')
    for doc in files.where('folderId', '==', folder_id).get():
        file_ops.relocate_file(metadata, remote, FileRecord.from_doc(doc.id, doc.data), new_parent)

    folders = metadata.collection(FOLDERS)
    subfolders = folders.where('parentId', '==', folder_id).get()
    old_paths = {sub.id: resolve_folder_path(metadata, sub.id) for sub in subfolders}

    batch = metadata.batch()
    now = utc_now()
    for sub in subfolders:
        batch.update(folders, sub.id, {'parentId': new_parent, 'updatedAt': now})
    batch.delete(folders, folder_id)
    batch.commit()

    for sub in subfolders:
        relocate_folder_dir(metadata, remote, sub.id, old_paths[sub.id], resolve_folder_path(metadata, sub.id))

    if folder_path:
        remote.rmdir(folder_path)
    print(f"🗑️ Folder deleted: {folder_path or folder.name} "
          f"(contents moved to {new_parent or 'root'})")
