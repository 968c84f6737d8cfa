"""
Error taxonomy for ScribeStore.
Every error carries the HTTP status it is surfaced with.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'success': False, 'error': self.message}


class ValidationError(ServiceError):
    status_code = 400


class CircularReferenceError(ValidationError):
    pass


class MissingChunkError(ValidationError):
    def __init__(self, index):
        super().__init__(f'Missing chunk {index}.')
        self.index = index


class ChunkTooLargeError(ValidationError):
    status_code = 413


class AuthenticationRequired(ServiceError):
    status_code = 401


class AccessDeniedError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class FolderConflictError(ServiceError):
    """Another folder already maps to the same remote directory"""
    status_code = 409


class RemoteError(ServiceError):
    """Base class for failures reported by the remote file store"""
    status_code = 502


class RemoteNotFoundError(RemoteError):
    status_code = 404


class RemoteTransportError(RemoteError):
    """Connection, login, timeout or protocol failure - worth retrying later"""


class RemoteWriteError(RemoteTransportError):
    pass
