import pytest

import folder_ops
from errors import AccessDeniedError, CircularReferenceError, FolderConflictError, NotFoundError, ValidationError
from models import FileRecord


def _add_file(metadata, remote, owner, name, folder_id=None, data=b'bytes'):
    from paths import resolve_folder_path, sanitize_email

    folder_path = resolve_folder_path(metadata, folder_id)
    path = f'{folder_path}/{name}' if folder_path else f'{sanitize_email(owner.email)}/{name}'
    remote.put(path, data)
    record = FileRecord(originalName=name, savedAs=name, storagePath=path, uploadedBy=owner.uid,
                        uploadedByEmail=owner.email, folderId=folder_id)
    record.id = metadata.collection('files').add(record.to_doc())
    return record


def _path_of(metadata, file_id):
    return metadata.collection('files').get(file_id)['storagePath']


def test_create_folder_makes_remote_dir(metadata, remote, user):
    root = folder_ops.create_folder(metadata, remote, user, '  Reports ')
    child = folder_ops.create_folder(metadata, remote, user, 'Q1', root.id)

    assert root.name == 'Reports'
    assert child.parentId == root.id
    assert 'jane.doe/Reports/Q1' in remote.dirs


def test_create_folder_validation(metadata, remote, user, other_user):
    with pytest.raises(ValidationError):
        folder_ops.create_folder(metadata, remote, user, '   ')
    with pytest.raises(NotFoundError):
        folder_ops.create_folder(metadata, remote, user, 'X', 'missing')

    theirs = folder_ops.create_folder(metadata, remote, other_user, 'Private')
    with pytest.raises(AccessDeniedError):
        folder_ops.create_folder(metadata, remote, user, 'X', theirs.id)


def test_create_folder_survives_remote_failure(metadata, remote, user):
    remote.fail_ops = {'mkdir'}
    folder = folder_ops.create_folder(metadata, remote, user, 'Reports')
    assert metadata.collection('folders').get(folder.id)['name'] == 'Reports'


def test_list_folders_is_role_scoped(metadata, remote, user, other_user, admin):
    folder_ops.create_folder(metadata, remote, user, 'Mine')
    folder_ops.create_folder(metadata, remote, other_user, 'Theirs')

    assert [f.name for f in folder_ops.list_folders(metadata, user)] == ['Mine']
    assert len(folder_ops.list_folders(metadata, admin)) == 2


def test_rename_cascades_to_every_descendant(metadata, remote, user):
    root = folder_ops.create_folder(metadata, remote, user, 'Reports')
    sub = folder_ops.create_folder(metadata, remote, user, 'Q1', root.id)
    top = _add_file(metadata, remote, user, 'top.pdf', root.id)
    deep = _add_file(metadata, remote, user, 'deep.pdf', sub.id)

    folder_ops.rename_folder(metadata, remote, user, root.id, 'Q-Reports')

    assert _path_of(metadata, top.id) == 'jane.doe/Q-Reports/top.pdf'
    assert _path_of(metadata, deep.id) == 'jane.doe/Q-Reports/Q1/deep.pdf'
    assert remote.files['jane.doe/Q-Reports/Q1/deep.pdf'] == b'bytes'
    assert 'jane.doe/Reports/top.pdf' not in remote.files


def test_rename_requires_owner(metadata, remote, user, other_user, admin):
    folder = folder_ops.create_folder(metadata, remote, user, 'Reports')
    with pytest.raises(AccessDeniedError):
        folder_ops.rename_folder(metadata, remote, other_user, folder.id, 'Mine now')

    assert folder_ops.rename_folder(metadata, remote, admin, folder.id, 'Checked').name == 'Checked'


def test_rename_remote_failure_flags_tree(metadata, remote, user):
    root = folder_ops.create_folder(metadata, remote, user, 'Reports')
    record = _add_file(metadata, remote, user, 'a.pdf', root.id)
    remote.fail_ops = {'rename'}

    folder_ops.rename_folder(metadata, remote, user, root.id, 'Q-Reports')

    stored = metadata.collection('files').get(record.id)
    assert metadata.collection('folders').get(root.id)['name'] == 'Q-Reports'
    assert stored['reconciliationPending'] is True
    assert stored['storagePath'] == 'jane.doe/Reports/a.pdf'


def test_move_rejects_cycles(metadata, remote, user):
    a = folder_ops.create_folder(metadata, remote, user, 'A')
    b = folder_ops.create_folder(metadata, remote, user, 'B', a.id)
    c = folder_ops.create_folder(metadata, remote, user, 'C', b.id)

    with pytest.raises(CircularReferenceError):
        folder_ops.move_folder(metadata, remote, user, a.id, a.id)
    with pytest.raises(CircularReferenceError):
        folder_ops.move_folder(metadata, remote, user, a.id, c.id)
    assert metadata.collection('folders').get(a.id)['parentId'] is None


def test_move_folder_relocates_files(metadata, remote, user):
    archive = folder_ops.create_folder(metadata, remote, user, 'Archive')
    reports = folder_ops.create_folder(metadata, remote, user, 'Reports')
    record = _add_file(metadata, remote, user, 'a.pdf', reports.id)

    folder_ops.move_folder(metadata, remote, user, reports.id, archive.id)

    assert _path_of(metadata, record.id) == 'jane.doe/Archive/Reports/a.pdf'
    assert 'jane.doe/Archive/Reports/a.pdf' in remote.files

    folder_ops.move_folder(metadata, remote, user, reports.id, None)
    assert _path_of(metadata, record.id) == 'jane.doe/Reports/a.pdf'


def test_move_into_foreign_folder_denied(metadata, remote, user, other_user):
    mine = folder_ops.create_folder(metadata, remote, user, 'Mine')
    theirs = folder_ops.create_folder(metadata, remote, other_user, 'Theirs')
    with pytest.raises(AccessDeniedError):
        folder_ops.move_folder(metadata, remote, user, mine.id, theirs.id)


def test_delete_reparents_contents(metadata, remote, user):
    root = folder_ops.create_folder(metadata, remote, user, 'Root')
    doomed = folder_ops.create_folder(metadata, remote, user, 'Doomed', root.id)
    sub = folder_ops.create_folder(metadata, remote, user, 'Sub', doomed.id)
    direct = _add_file(metadata, remote, user, 'direct.pdf', doomed.id)
    nested = _add_file(metadata, remote, user, 'nested.pdf', sub.id)

    folder_ops.delete_folder(metadata, remote, user, doomed.id)

    folders = metadata.collection('folders')
    files = metadata.collection('files')
    assert folders.get(doomed.id) is None
    assert folders.get(sub.id)['parentId'] == root.id
    assert files.get(direct.id)['folderId'] == root.id
    assert _path_of(metadata, direct.id) == 'jane.doe/Root/direct.pdf'
    assert _path_of(metadata, nested.id) == 'jane.doe/Root/Sub/nested.pdf'
    assert remote.files['jane.doe/Root/Sub/nested.pdf'] == b'bytes'
    assert 'jane.doe/Root/Doomed' not in remote.dirs


def test_delete_root_folder_moves_files_to_owner_root(metadata, remote, user):
    folder = folder_ops.create_folder(metadata, remote, user, 'Reports')
    record = _add_file(metadata, remote, user, 'a.pdf', folder.id)

    folder_ops.delete_folder(metadata, remote, user, folder.id)

    stored = metadata.collection('files').get(record.id)
    assert stored['folderId'] is None
    assert stored['storagePath'] == 'jane.doe/a.pdf'
    assert 'jane.doe/a.pdf' in remote.files


def test_delete_folder_remote_failure_still_reparents(metadata, remote, user):
    folder = folder_ops.create_folder(metadata, remote, user, 'Reports')
    record = _add_file(metadata, remote, user, 'a.pdf', folder.id)
    remote.fail_ops = {'rename'}

    folder_ops.delete_folder(metadata, remote, user, folder.id)

    stored = metadata.collection('files').get(record.id)
    assert stored['folderId'] is None
    assert stored['reconciliationPending'] is True
    assert stored['storagePath'] == 'jane.doe/Reports/a.pdf'


def test_sibling_names_must_map_to_distinct_directories(metadata, remote, user, other_user):
    root = folder_ops.create_folder(metadata, remote, user, 'Q1?Reports')
    with pytest.raises(FolderConflictError):
        folder_ops.create_folder(metadata, remote, user, 'Q1*Reports')

    # Another owner's namespace is a different directory
    folder_ops.create_folder(metadata, remote, other_user, 'Q1*Reports')

    folder_ops.create_folder(metadata, remote, user, 'Notes', root.id)
    with pytest.raises(FolderConflictError):
        folder_ops.create_folder(metadata, remote, user, 'Notes', root.id)


def test_rename_onto_sibling_directory_rejected(metadata, remote, user):
    drafts = folder_ops.create_folder(metadata, remote, user, 'Drafts:1')
    final = folder_ops.create_folder(metadata, remote, user, 'Final')
    kept = _add_file(metadata, remote, user, 'a.pdf', drafts.id)

    with pytest.raises(FolderConflictError):
        folder_ops.rename_folder(metadata, remote, user, final.id, 'Drafts/1')

    assert metadata.collection('folders').get(final.id)['name'] == 'Final'
    assert remote.files['jane.doe/Drafts_1/a.pdf'] == b'bytes'
    assert _path_of(metadata, kept.id) == 'jane.doe/Drafts_1/a.pdf'

    # Renaming a folder to a variant of its own name is fine
    assert folder_ops.rename_folder(metadata, remote, user, drafts.id, 'Drafts*1').name == 'Drafts*1'


def test_move_and_delete_reject_directory_clash(metadata, remote, user):
    archive = folder_ops.create_folder(metadata, remote, user, 'Archive')
    inner = folder_ops.create_folder(metadata, remote, user, 'Notes', archive.id)
    folder_ops.create_folder(metadata, remote, user, 'Notes')

    with pytest.raises(FolderConflictError):
        folder_ops.move_folder(metadata, remote, user, inner.id, None)
    with pytest.raises(FolderConflictError):
        folder_ops.delete_folder(metadata, remote, user, archive.id)

    assert metadata.collection('folders').get(archive.id) is not None
    assert metadata.collection('folders').get(inner.id)['parentId'] == archive.id
