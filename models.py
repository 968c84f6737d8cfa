"""
Record types for the folder tree and the file metadata.
Documents are converted at the metadata-store boundary with from_doc/to_doc.
"""

import time
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Optional

from errors import ValidationError

STATUSES = ('pending', 'in-progress', 'transcribed')
DESCRIPTION_MAX_LENGTH = 2000


def utc_now():
    return datetime.now(timezone.utc).isoformat()


def now_ms():
    return int(time.time() * 1000)


def _from_doc(cls, doc_id, doc):
    known = {f.name for f in fields(cls)}
    values = {k: v for k, v in (doc or {}).items() if k in known and k != 'id'}
    return cls(id=doc_id, **values)


@dataclass
class Folder:
    id: Optional[str] = None
    name: str = ''
    parentId: Optional[str] = None
    createdBy: Optional[str] = None
    createdByEmail: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

    @classmethod
    def from_doc(cls, doc_id, doc):
        return _from_doc(cls, doc_id, doc)

    def to_doc(self):
        doc = asdict(self)
        doc.pop('id')
        return doc

    def to_dict(self):
        return asdict(self)


@dataclass
class FileRecord:
    id: Optional[str] = None
    originalName: str = ''
    savedAs: Optional[str] = None
    storagePath: Optional[str] = None
    originalStoragePath: Optional[str] = None
    url: Optional[str] = None
    size: int = 0
    type: str = 'application/octet-stream'
    fileCategory: str = 'Other'
    uploadedBy: Optional[str] = None
    uploadedByEmail: Optional[str] = None
    uploadedAt: Optional[str] = None
    updatedAt: Optional[str] = None
    status: str = 'pending'
    description: str = ''
    serviceCategory: Optional[str] = None
    sourceType: str = 'file'
    sourceUrl: Optional[str] = None
    folderId: Optional[str] = None
    reconciliationPending: bool = False

    @classmethod
    def from_doc(cls, doc_id, doc):
        return _from_doc(cls, doc_id, doc)

    def to_doc(self):
        doc = asdict(self)
        doc.pop('id')
        return doc

    def to_dict(self):
        return asdict(self)

    @property
    def has_remote_object(self):
        """Embedded links (URL imports of video platforms) have no bytes on the remote store"""
        return bool(self.storagePath or self.savedAs)


def file_category(mime_type):
    mime_type = (mime_type or '').lower()
    if mime_type.startswith('video/'):
        return 'Video'
    if mime_type.startswith('audio/'):
        return 'Audio'
    if mime_type.startswith('image/'):
        return 'Image'
    if mime_type == 'application/pdf':
        return 'PDF'
    if (mime_type.startswith('text/') or 'word' in mime_type or 'excel' in mime_type
            or 'spreadsheet' in mime_type or 'powerpoint' in mime_type or 'presentation' in mime_type):
        return 'Document'
    return 'Other'


def clean_description(description):
    text = (description or '').strip()
    if len(text) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(f'Description must be {DESCRIPTION_MAX_LENGTH} characters or fewer.')
    return text
