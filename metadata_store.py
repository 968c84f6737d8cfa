"""
Small document store for folder, file and upload-session records.

Collections of schemaless JSON documents keyed by an opaque id, persisted to a
single JSON file (or kept in memory when no path is given). Supports the
document-database subset the rest of the app relies on: get/add/set/update/
delete, equality queries, cursor pagination and atomic multi-document batches.
"""

import copy
import json
import os
import threading
import uuid

from errors import NotFoundError


class Document:
    """A snapshot of one stored document"""

    __slots__ = ('id', 'data')

    def __init__(self, doc_id, data):
        self.id = doc_id
        self.data = data

    def get(self, field, default=None):
        return self.data.get(field, default)

    def __repr__(self):
        return f'Document({self.id!r})'


_OPERATORS = {
    '==': lambda a, b: a == b,
    '!=': lambda a, b: a != b,
    'in': lambda a, b: a in b,
}


class Query:
    """Immutable query over one collection; results are ordered by document id"""

    def __init__(self, collection, filters=(), after=None, max_results=None):
        self._collection = collection
        self._filters = tuple(filters)
        self._after = after
        self._max_results = max_results

    def where(self, field, op, value):
        if op not in _OPERATORS:
            raise ValueError(f'Unsupported query operator: {op}')
        return Query(self._collection, self._filters + ((field, op, value),),
                     self._after, self._max_results)

    def start_after(self, doc_id):
        return Query(self._collection, self._filters, doc_id, self._max_results)

    def limit(self, count):
        return Query(self._collection, self._filters, self._after, count)

    def _matches(self, data):
        for field, op, value in self._filters:
            if not _OPERATORS[op](data.get(field), value):
                return False
        return True

    def get(self):
        store = self._collection.store
        with store._lock:
            docs = store._collection_data(self._collection.name)
            results = []
            for doc_id in sorted(docs):
                if self._after is not None and doc_id <= self._after:
                    continue
                data = docs[doc_id]
                if not self._matches(data):
                    continue
                results.append(Document(doc_id, copy.deepcopy(data)))
                if self._max_results is not None and len(results) >= self._max_results:
                    break
            return results


class Collection:
    def __init__(self, store, name):
        self.store = store
        self.name = name

    def get(self, doc_id):
        """Return a copy of the document's fields, or None when it does not exist"""
        if not doc_id:
            return None
        with self.store._lock:
            data = self.store._collection_data(self.name).get(doc_id)
            return copy.deepcopy(data) if data is not None else None

    def add(self, data):
        doc_id = uuid.uuid4().hex
        self.set(doc_id, data)
        return doc_id

    def set(self, doc_id, data):
        with self.store._lock:
            self.store._collection_data(self.name)[doc_id] = copy.deepcopy(data)
            self.store._save()

    def update(self, doc_id, fields):
        with self.store._lock:
            docs = self.store._collection_data(self.name)
            if doc_id not in docs:
                raise NotFoundError(f'{self.name}/{doc_id} not found')
            docs[doc_id].update(copy.deepcopy(fields))
            self.store._save()

    def delete(self, doc_id):
        with self.store._lock:
            removed = self.store._collection_data(self.name).pop(doc_id, None)
            if removed is not None:
                self.store._save()
            return removed is not None

    def query(self):
        return Query(self)

    def where(self, field, op, value):
        return Query(self).where(field, op, value)

    def start_after(self, doc_id):
        return Query(self).start_after(doc_id)

    def limit(self, count):
        return Query(self).limit(count)

    def stream(self):
        return Query(self).get()


class WriteBatch:
    """Buffered writes applied together on commit()"""

    def __init__(self, store):
        self._store = store
        self._ops = []

    def set(self, collection, doc_id, data):
        self._ops.append(('set', collection, doc_id, copy.deepcopy(data)))
        return self

    def update(self, collection, doc_id, fields):
        self._ops.append(('update', collection, doc_id, copy.deepcopy(fields)))
        return self

    def delete(self, collection, doc_id):
        self._ops.append(('delete', collection, doc_id, None))
        return self

    def commit(self):
        store = self._store
        with store._lock:
            # Validate first so a bad update leaves every document untouched
            for op, collection, doc_id, _ in self._ops:
                if op == 'update' and doc_id not in store._collection_data(collection.name):
                    raise NotFoundError(f'{collection.name}/{doc_id} not found')

            for op, collection, doc_id, payload in self._ops:
                docs = store._collection_data(collection.name)
                if op == 'set':
                    docs[doc_id] = payload
                elif op == 'update':
                    docs[doc_id].update(payload)
                else:
                    docs.pop(doc_id, None)

            if self._ops:
                store._save()
            count = len(self._ops)
            self._ops = []
            return count


class DocumentStore:
    def __init__(self, path=None):
        self.path = path
        self._lock = threading.RLock()
        self._data = None

    def _load(self):
        if self._data is not None:
            return
        self._data = {}
        if self.path and os.path.exists(self.path):
            with open(self.path, 'r', encoding='utf-8') as f:
                self._data = json.load(f)
            print(f"📂 Metadata loaded from {self.path}")

    def _collection_data(self, name):
        self._load()
        return self._data.setdefault(name, {})

    def _save(self):
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f'{self.path}.tmp'
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(self._data, f, indent=2)
        os.replace(tmp_path, self.path)

    def collection(self, name):
        return Collection(self, name)

    def batch(self):
        return WriteBatch(self)
