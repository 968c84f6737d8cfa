import pytest

import file_ops
import folder_ops
from errors import AccessDeniedError, NotFoundError, RemoteTransportError, ValidationError
from models import FileRecord


def _add_file(metadata, remote, owner, saved_as, folder_id=None, path=None, **extra):
    path = path or f"{owner.email.split('@')[0]}/{saved_as}"
    remote.put(path, b'data')
    record = FileRecord(originalName=saved_as, savedAs=saved_as, storagePath=path, uploadedBy=owner.uid,
                        uploadedByEmail=owner.email, folderId=folder_id, **extra)
    record.id = metadata.collection('files').add(record.to_doc())
    return record


def _stored(metadata, file_id):
    return metadata.collection('files').get(file_id)


def test_list_files_scoped_and_newest_first(metadata, remote, user, other_user, admin):
    _add_file(metadata, remote, user, 'old.mp3', uploadedAt='2024-01-01T00:00:00+00:00')
    _add_file(metadata, remote, user, 'new.mp3', uploadedAt='2024-06-01T00:00:00+00:00', status='transcribed')
    _add_file(metadata, remote, other_user, 'theirs.mp3', uploadedAt='2024-03-01T00:00:00+00:00')

    assert [r.savedAs for r in file_ops.list_files(metadata, user)] == ['new.mp3', 'old.mp3']
    assert [r.savedAs for r in file_ops.list_files(metadata, admin)] == ['new.mp3', 'theirs.mp3', 'old.mp3']
    assert [r.savedAs for r in file_ops.list_files(metadata, user, status='transcribed')] == ['new.mp3']


def test_move_file_into_folder_and_back(metadata, remote, user):
    folder = folder_ops.create_folder(metadata, remote, user, 'Reports')
    record = _add_file(metadata, remote, user, 'Svc_1700000000000-a.mp3')

    file_ops.move_file(metadata, remote, user, record.id, folder.id)
    stored = _stored(metadata, record.id)
    assert stored['storagePath'] == 'jane.doe/Reports/Svc_1700000000000-a.mp3'
    assert stored['originalStoragePath'] == 'jane.doe/Svc_1700000000000-a.mp3'
    assert stored['url'] == '/api/files/jane.doe/Reports/Svc_1700000000000-a.mp3'
    assert 'jane.doe/Reports/Svc_1700000000000-a.mp3' in remote.files

    file_ops.move_file(metadata, remote, user, record.id, None)
    stored = _stored(metadata, record.id)
    assert stored['storagePath'] == 'jane.doe/Svc_1700000000000-a.mp3'
    assert stored['folderId'] is None
    assert 'jane.doe/Svc_1700000000000-a.mp3' in remote.files


def test_move_file_checks_owner_and_target(metadata, remote, user, other_user):
    record = _add_file(metadata, remote, user, 'a.mp3')
    theirs = folder_ops.create_folder(metadata, remote, other_user, 'Theirs')

    with pytest.raises(AccessDeniedError):
        file_ops.move_file(metadata, remote, other_user, record.id, None)
    with pytest.raises(AccessDeniedError):
        file_ops.move_file(metadata, remote, user, record.id, theirs.id)
    with pytest.raises(NotFoundError):
        file_ops.move_file(metadata, remote, user, record.id, 'missing')
    with pytest.raises(NotFoundError):
        file_ops.move_file(metadata, remote, user, 'missing', None)


def test_move_file_remote_failure_is_deferred(metadata, remote, user):
    folder = folder_ops.create_folder(metadata, remote, user, 'Reports')
    record = _add_file(metadata, remote, user, 'a.mp3')
    remote.fail_ops = {'rename'}

    file_ops.move_file(metadata, remote, user, record.id, folder.id)

    stored = _stored(metadata, record.id)
    assert stored['folderId'] == folder.id
    assert stored['storagePath'] == 'jane.doe/a.mp3'
    assert stored['reconciliationPending'] is True


def test_renamed_basename_keeps_prefix_and_extension():
    assert file_ops.renamed_basename('Interview_1700000000000-take.mp3', 'Final Cut') == \
        'Interview_1700000000000-Final_Cut.mp3'
    assert file_ops.renamed_basename('1700000000000-x.pdf', 'y.pdf') == '1700000000000-y.pdf'


def test_rename_file_moves_remote_object(metadata, remote, user):
    record = _add_file(metadata, remote, user, 'Interview_1700000000000-take.mp3')

    file_ops.rename_file(metadata, remote, user, record.id, 'Final Cut')

    stored = _stored(metadata, record.id)
    assert stored['originalName'] == 'Final Cut'
    assert stored['savedAs'] == 'Interview_1700000000000-Final_Cut.mp3'
    assert stored['storagePath'] == 'jane.doe/Interview_1700000000000-Final_Cut.mp3'
    assert 'jane.doe/Interview_1700000000000-Final_Cut.mp3' in remote.files


def test_rename_file_remote_failure_keeps_old_name(metadata, remote, user, other_user):
    record = _add_file(metadata, remote, user, 'Svc_1700000000000-a.mp3')
    with pytest.raises(AccessDeniedError):
        file_ops.rename_file(metadata, remote, other_user, record.id, 'b')
    with pytest.raises(ValidationError):
        file_ops.rename_file(metadata, remote, user, record.id, '  ')

    remote.fail_ops = {'rename'}
    file_ops.rename_file(metadata, remote, user, record.id, 'b')
    stored = _stored(metadata, record.id)
    assert stored['originalName'] == 'b'
    assert stored['storagePath'] == 'jane.doe/Svc_1700000000000-a.mp3'


def test_update_description(metadata, remote, user):
    record = _add_file(metadata, remote, user, 'a.mp3')
    assert file_ops.update_description(metadata, user, record.id, '  notes  ') == 'notes'
    with pytest.raises(ValidationError):
        file_ops.update_description(metadata, user, record.id, 'x' * 2001)
    assert _stored(metadata, record.id)['description'] == 'notes'


def test_set_status(metadata, remote, user, admin):
    record = _add_file(metadata, remote, user, 'a.mp3')
    with pytest.raises(ValidationError):
        file_ops.set_status(metadata, admin, record.id, 'done')
    with pytest.raises(AccessDeniedError):
        file_ops.set_status(metadata, user, record.id, 'transcribed')

    file_ops.set_status(metadata, admin, record.id, 'in-progress')
    assert _stored(metadata, record.id)['status'] == 'in-progress'


def test_delete_file_remote_first(metadata, remote, user):
    record = _add_file(metadata, remote, user, 'a.mp3')
    file_ops.delete_file(metadata, remote, user, record.id)

    assert _stored(metadata, record.id) is None
    assert 'jane.doe/a.mp3' not in remote.files


def test_delete_file_already_gone_remotely(metadata, remote, user):
    record = _add_file(metadata, remote, user, 'a.mp3')
    remote.files.clear()
    file_ops.delete_file(metadata, remote, user, record.id)
    assert _stored(metadata, record.id) is None


def test_delete_file_transport_error_keeps_record(metadata, remote, user):
    record = _add_file(metadata, remote, user, 'a.mp3')
    remote.fail_ops = {'remove'}
    with pytest.raises(RemoteTransportError):
        file_ops.delete_file(metadata, remote, user, record.id)
    assert _stored(metadata, record.id) is not None


def test_bulk_operations_skip_failures(metadata, remote, user, other_user, admin):
    folder = folder_ops.create_folder(metadata, remote, user, 'Reports')
    mine = _add_file(metadata, remote, user, 'a.mp3')
    theirs = _add_file(metadata, remote, other_user, 'b.mp3')

    assert file_ops.bulk_move(metadata, remote, user, [mine.id, theirs.id, 'missing'], folder.id) == \
        {'moved': 1, 'skipped': 2}
    assert _stored(metadata, mine.id)['folderId'] == folder.id

    assert file_ops.bulk_status(metadata, admin, [mine.id, 'missing'], 'transcribed') == \
        {'updated': 1, 'skipped': 1}
    with pytest.raises(AccessDeniedError):
        file_ops.bulk_status(metadata, user, [mine.id], 'transcribed')

    assert file_ops.bulk_delete(metadata, remote, user, [mine.id, theirs.id]) == {'deleted': 1, 'skipped': 1}
    assert _stored(metadata, theirs.id) is not None

    with pytest.raises(ValidationError):
        file_ops.bulk_delete(metadata, remote, user, [])


def test_create_file_metadata(metadata, remote, user):
    record = file_ops.create_file_metadata(metadata, user, {
        'originalName': 'Talk.mp3', 'savedAs': '1700000000000-Talk.mp3', 'size': 12, 'type': 'audio/mpeg',
    })
    assert record.storagePath == 'jane.doe/1700000000000-Talk.mp3'

    with pytest.raises(ValidationError):
        file_ops.create_file_metadata(metadata, user, {'originalName': 'x', 'savedAs': '../etc/passwd'})
