from flask import Flask, request, jsonify, Response
from flask_cors import CORS
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
import logging

import config
from auth import admin_required, check_login, current_identity, login_required, login_user, logout_user
from errors import AuthenticationRequired, ServiceError, ValidationError
from ftp_store import FtpStore
from metadata_store import DocumentStore
import archive
import file_ops
import folder_ops
import ftp_sync
import proxy
import storage
import url_import

app = Flask(__name__)
CORS(app, origins=config.CORS_ORIGINS, supports_credentials=True)
app.secret_key = config.SESSION_SECRET

# Configure session handling
app.config.update(
    SESSION_COOKIE_SAMESITE='Lax',
    PERMANENT_SESSION_LIFETIME=config.PERMANENT_SESSION_LIFETIME,
    SESSION_REFRESH_EACH_REQUEST=True,
    SESSION_COOKIE_NAME='scribestore_session',
    MAX_CONTENT_LENGTH=config.MAX_CONTENT_LENGTH,
)

# Shared collaborators; tests swap these for in-memory fakes
metadata = DocumentStore(config.METADATA_DB_PATH)
remote = FtpStore.from_config()


def _json():
    return request.get_json(silent=True) or {}


def _ok(**payload):
    return jsonify(dict(success=True, **payload))


# ----------------------------------------------------------------------
# Error handling
# ----------------------------------------------------------------------

@app.errorhandler(ServiceError)
def service_error(err):
    if err.status_code >= 500:
        logging.warning(f"{request.method} {request.path}: {err.message}")
    return jsonify(err.to_dict()), err.status_code


@app.errorhandler(RequestEntityTooLarge)
def too_large(e):
    return jsonify({'success': False, 'error': 'File too large'}), 413


@app.errorhandler(Exception)
def internal_error(e):
    if isinstance(e, HTTPException):
        return jsonify({'success': False, 'error': e.description}), e.code
    logging.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


# ----------------------------------------------------------------------
# Session auth
# ----------------------------------------------------------------------

@app.route('/login', methods=['POST'])
def login():
    data = _json() if request.is_json else request.form
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''
    if not email or not password:
        raise ValidationError('Email and password are required.')

    identity = check_login(email, password)
    if identity is None:
        raise AuthenticationRequired('Invalid email or password')

    login_user(identity)
    print(f"🔑 {identity.email} logged in ({identity.role})")
    return _ok(user={'uid': identity.uid, 'email': identity.email, 'role': identity.role})


@app.route('/logout', methods=['POST'])
def logout():
    logout_user()
    response = _ok()
    response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate'
    return response


@app.route('/api/me', methods=['GET'])
@login_required
def me():
    identity = current_identity()
    return _ok(user={'uid': identity.uid, 'email': identity.email, 'role': identity.role})


# ----------------------------------------------------------------------
# Folders
# ----------------------------------------------------------------------

@app.route('/api/folders', methods=['POST'])
@login_required
def create_folder():
    data = _json()
    folder = folder_ops.create_folder(metadata, remote, current_identity(), data.get('name'), data.get('parentId'))
    return _ok(folderId=folder.id)


@app.route('/api/folders', methods=['GET'])
@login_required
def list_folders():
    folders = folder_ops.list_folders(metadata, current_identity())
    return _ok(folders=[f.to_dict() for f in folders])


@app.route('/api/folders/<folder_id>', methods=['PUT'])
@login_required
def rename_folder(folder_id):
    folder_ops.rename_folder(metadata, remote, current_identity(), folder_id, _json().get('name'))
    return _ok()


@app.route('/api/folders/<folder_id>/move', methods=['PUT'])
@login_required
def move_folder(folder_id):
    folder_ops.move_folder(metadata, remote, current_identity(), folder_id, _json().get('parentId'))
    return _ok()


@app.route('/api/folders/<folder_id>', methods=['DELETE'])
@login_required
def delete_folder(folder_id):
    folder_ops.delete_folder(metadata, remote, current_identity(), folder_id)
    return _ok()


# ----------------------------------------------------------------------
# Uploads
# ----------------------------------------------------------------------

def _upload_response(record):
    return _ok(
        message=f'"{record.originalName}" uploaded successfully.',
        file={'originalName': record.originalName, 'savedAs': record.savedAs,
              'size': record.size, 'type': record.type, 'url': record.url},
        fileId=record.id,
    )


@app.route('/api/upload', methods=['POST'])
@login_required
def upload():
    uploaded = request.files.get('file')
    if uploaded is None or not uploaded.filename:
        raise ValidationError('No file provided.')

    mime_type = request.form.get('mimeType') or uploaded.mimetype
    if mime_type == 'application/octet-stream':
        mime_type = None  # let the extension decide

    record = storage.store_direct_upload(
        metadata, remote, current_identity(), uploaded.stream, uploaded.filename,
        mime_type=mime_type,
        service_category=request.form.get('serviceCategory'),
        folder_id=request.form.get('folderId') or None,
        description=request.form.get('description', ''),
    )
    return _upload_response(record)


@app.route('/api/upload/chunk', methods=['POST'])
@login_required
def upload_chunk():
    chunk = request.files.get('chunk')
    if chunk is None:
        raise ValidationError('No chunk received.')

    # One byte past the limit is enough to reject an oversized chunk
    data = chunk.read(config.CHUNK_SIZE + 1)
    duplicate = storage.receive_chunk(metadata, remote, request.form.get('uploadId'),
                                      request.form.get('chunkIndex'), data)
    if duplicate:
        return _ok(dedup=True)
    return _ok()


@app.route('/api/upload/complete', methods=['POST'])
@login_required
def upload_complete():
    data = _json()
    record = storage.finalize_upload(
        metadata, remote, current_identity(),
        data.get('uploadId'), data.get('fileName'), data.get('totalChunks'), data.get('mimeType'),
        service_category=data.get('serviceCategory'),
        folder_id=data.get('folderId') or None,
        description=data.get('description', ''),
    )
    return _upload_response(record)


@app.route('/api/upload/cancel', methods=['POST'])
@login_required
def upload_cancel():
    data = _json()
    removed = storage.cancel_upload(metadata, remote, data.get('uploadId'), data.get('totalChunks'))
    return _ok(removed=removed)


@app.route('/api/upload/url', methods=['POST'])
@login_required
def upload_url():
    data = _json()
    record = url_import.import_from_url(
        metadata, remote, current_identity(), data.get('url'),
        custom_name=data.get('customName'),
        description=data.get('description', ''),
        service_category=data.get('serviceCategory'),
        folder_id=data.get('folderId') or None,
    )
    return _ok(
        message=f'"{record.originalName}" saved successfully.',
        fileId=record.id,
        embedded=not record.has_remote_object,
    )


# ----------------------------------------------------------------------
# File metadata
# ----------------------------------------------------------------------

@app.route('/api/files/metadata', methods=['GET'])
@login_required
def list_files():
    kwargs = {}
    if 'folderId' in request.args:
        kwargs['folder_id'] = request.args.get('folderId') or None
    records = file_ops.list_files(metadata, current_identity(), status=request.args.get('status'), **kwargs)
    return _ok(files=[r.to_dict() for r in records])


@app.route('/api/files/metadata', methods=['POST'])
@login_required
def create_file_metadata():
    record = file_ops.create_file_metadata(metadata, current_identity(), _json())
    return _ok(fileId=record.id)


@app.route('/api/files/metadata/<file_id>/folder', methods=['PUT'])
@login_required
def move_file(file_id):
    record = file_ops.move_file(metadata, remote, current_identity(), file_id, _json().get('folderId'))
    return _ok(storagePath=record.storagePath)


@app.route('/api/files/metadata/<file_id>/rename', methods=['PUT'])
@login_required
def rename_file(file_id):
    record = file_ops.rename_file(metadata, remote, current_identity(), file_id, _json().get('name'))
    return _ok(storagePath=record.storagePath)


@app.route('/api/files/metadata/<file_id>/description', methods=['PUT'])
@login_required
def update_description(file_id):
    description = file_ops.update_description(metadata, current_identity(), file_id, _json().get('description'))
    return _ok(description=description)


@app.route('/api/files/metadata/<file_id>/status', methods=['PUT'])
@admin_required
def set_status(file_id):
    file_ops.set_status(metadata, current_identity(), file_id, _json().get('status'))
    return _ok()


@app.route('/api/files/metadata/<file_id>', methods=['DELETE'])
@login_required
def delete_file(file_id):
    file_ops.delete_file(metadata, remote, current_identity(), file_id)
    return _ok()


# ----------------------------------------------------------------------
# Bulk operations
# ----------------------------------------------------------------------

@app.route('/api/files/bulk-move', methods=['POST'])
@login_required
def bulk_move():
    data = _json()
    result = file_ops.bulk_move(metadata, remote, current_identity(), data.get('fileIds'), data.get('folderId'))
    return _ok(**result)


@app.route('/api/files/bulk-delete', methods=['POST'])
@login_required
def bulk_delete():
    result = file_ops.bulk_delete(metadata, remote, current_identity(), _json().get('fileIds'))
    return _ok(**result)


@app.route('/api/files/bulk-status', methods=['POST'])
@admin_required
def bulk_status():
    data = _json()
    result = file_ops.bulk_status(metadata, current_identity(), data.get('fileIds'), data.get('status'))
    return _ok(**result)


def _zip_response(records, zip_filename):
    zf, added = archive.build_zip(remote, records)
    if not added:
        return jsonify({'success': False, 'error': 'None of the files exist on the remote store.'}), 404

    def generate_zip_stream():
        for chunk in zf:
            yield chunk
        print(f"📦 ZIP stream download completed: {zip_filename}")

    return Response(
        generate_zip_stream(),
        mimetype='application/zip',
        headers={
            'Content-Disposition': f'attachment; filename="{zip_filename}"',
            'Cache-Control': 'no-cache',
            'X-Accel-Buffering': 'no',
            'Content-Encoding': 'identity',
        },
    )


@app.route('/api/files/bulk-download', methods=['POST'])
@login_required
def bulk_download():
    records = archive.files_for_bulk_download(metadata, current_identity(), _json().get('fileIds'))
    print(f"📥 Bulk download of {len(records)} files requested by {current_identity().email}")
    return _zip_response(records, archive.bulk_zip_name())


@app.route('/api/files/download-folder/<folder_id>', methods=['POST'])
@login_required
def download_folder(folder_id):
    records, zip_filename = archive.files_for_folder_download(metadata, current_identity(), folder_id)
    return _zip_response(records, zip_filename)


# ----------------------------------------------------------------------
# Streaming proxy + reconciliation
# ----------------------------------------------------------------------

@app.route('/api/files/<path:path>', methods=['GET'])
@login_required
def serve_file(path):
    return proxy.serve_file(
        metadata, remote, current_identity(), path,
        range_header=request.headers.get('Range'),
        download=request.args.get('download') == '1',
    )


@app.route('/api/ftp-sync', methods=['POST'])
@admin_required
def ftp_sync_now():
    result = ftp_sync.reconcile_once(metadata, remote)
    return _ok(**result)


if __name__ == '__main__':
    from scheduler import initialize_background_jobs

    logging.basicConfig(level=logging.INFO)
    config.setup_scratch_directory()
    print(f"🚀 Starting ScribeStore on port {config.PORT}")
    config.print_config_info()
    initialize_background_jobs(metadata, remote)
    app.run(host=config.HOST, port=config.PORT, threaded=True)
