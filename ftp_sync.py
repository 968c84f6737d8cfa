"""
Reconciliation sweep between the metadata store and the remote store.

Each run checks one batch of file records. A record whose remote object is
confirmed gone is deleted; a record flagged reconciliationPending is moved
back to (or pointed at) its canonical remote path first. Batches rotate with
an id cursor so repeated runs visit every record.
"""

import logging
import threading

import config
from errors import RemoteError, RemoteNotFoundError
from models import FileRecord, utc_now
from paths import compute_file_remote_path, file_url

FILES = 'files'


class ReconciliationSweep:
    def __init__(self, batch_size=None):
        self.batch_size = batch_size
        self._lock = threading.Lock()
        self._cursor = None
        self.last_result = None

    def _next_batch(self, metadata):
        size = self.batch_size or config.SYNC_BATCH_SIZE
        query = metadata.collection(FILES).query()
        if self._cursor is not None:
            query = query.start_after(self._cursor)
        docs = query.limit(size).get()
        # A short batch means the end of the collection: start over next time
        self._cursor = docs[-1].id if len(docs) == size else None
        return [FileRecord.from_doc(doc.id, doc.data) for doc in docs]

    def run(self, metadata, remote):
        """One sweep cycle. Returns {checked, removed, repaired} or a skipped marker."""
        if not self._lock.acquire(blocking=False):
            print("⏭️ Reconciliation already running, skipping this trigger")
            return {'checked': 0, 'removed': 0, 'skipped': True}

        try:
            checked = removed = repaired = 0
            for record in self._next_batch(metadata):
                if not record.has_remote_object:
                    continue  # embedded link, nothing stored remotely
                checked += 1
                try:
                    if record.reconciliationPending:
                        outcome = self._repair(metadata, remote, record)
                    else:
                        outcome = self._verify(metadata, remote, record)
                except RemoteError as e:
                    logging.warning(f"[sync] {record.id}: remote check failed, keeping record: {e.message}")
                    continue
                if outcome == 'removed':
                    removed += 1
                elif outcome == 'repaired':
                    repaired += 1

            result = {'checked': checked, 'removed': removed, 'repaired': repaired}
            self.last_result = result
            if removed or repaired:
                print(f"🔄 Reconciliation: checked {checked}, removed {removed}, repaired {repaired}")
            return result
        finally:
            self._lock.release()

    def _verify(self, metadata, remote, record):
        remote_path = record.storagePath or record.savedAs
        try:
            remote.size(remote_path)
            return 'ok'
        except RemoteNotFoundError:
            return self._remove(metadata, record, remote_path)

    def _repair(self, metadata, remote, record):
        current = record.storagePath or record.savedAs
        canonical = compute_file_remote_path(metadata, record, record.folderId) or current

        if remote.exists(current):
            if canonical != current:
                remote.rename(current, canonical)
            self._point_at(metadata, record, canonical)
            return 'repaired'

        if canonical != current and remote.exists(canonical):
            self._point_at(metadata, record, canonical)
            return 'repaired'

        return self._remove(metadata, record, current)

    @staticmethod
    def _point_at(metadata, record, remote_path):
        metadata.collection(FILES).update(record.id, {
            'storagePath': remote_path,
            'url': file_url(remote_path),
            'reconciliationPending': False,
            'updatedAt': utc_now(),
        })
        logging.info(f"[sync] {record.id} reconciled at {remote_path}")

    @staticmethod
    def _remove(metadata, record, remote_path):
        files = metadata.collection(FILES)
        latest = files.get(record.id)
        # The record may have been moved while we were checking the old path
        if latest is None or latest.get('storagePath') != record.storagePath:
            return 'ok'
        files.delete(record.id)
        logging.warning(f"[sync] removed metadata for missing remote object {remote_path} ({record.id})")
        return 'removed'


sweep = ReconciliationSweep()


def reconcile_once(metadata, remote):
    return sweep.run(metadata, remote)
