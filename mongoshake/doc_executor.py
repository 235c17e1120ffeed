"""Writing batches of documents to the target collection in parallel."""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from typing import Any, Callable, Optional, Sequence

import bson
import pymongo
from bson.raw_bson import RawBSONDocument
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError
from pymongo.write_concern import WriteConcern

from mongoshake.filters import Namespace
from mongoshake.orphan import OrphanFilter

_logger = logging.getLogger(__name__)

_DUPLICATE_CODES = frozenset({11000, 11001, 12582})
_STOP = object()

_coll_ids = itertools.count()
_doc_ids = itertools.count()
_id_lock = threading.Lock()


class DocSyncError(Exception):
    """Writing documents to the target failed."""


def generate_coll_executor_id() -> int:
    """Return the next collection executor id, starting from 0."""
    with _id_lock:
        return next(_coll_ids)


def generate_doc_executor_id() -> int:
    """Return the next document executor id, starting from 0."""
    with _id_lock:
        return next(_doc_ids)


def _default_client(url: str) -> Any:
    return pymongo.MongoClient(url)


class DocExecutor:
    """Inserts batches of raw documents into one target collection."""

    def __init__(self, executor_id: int, collection: Any, *,
                 orphan_filter: Optional[OrphanFilter] = None,
                 filter_orphan_document: bool = False,
                 insert_on_dup_update: bool = False,
                 throttle: Optional[Callable[[], None]] = None,
                 debug: bool = False) -> None:
        self.executor_id = executor_id
        self.collection = collection
        self.orphan_filter = orphan_filter
        self.filter_orphan_document = filter_orphan_document
        self.insert_on_dup_update = insert_on_dup_update
        self.throttle = throttle
        self.debug = debug
        self.error: Optional[BaseException] = None

    def __str__(self) -> str:
        name = getattr(self.collection, "full_name", None)
        return f"DocExecutor[{self.executor_id}] collection[{name}]"

    def _serve(self, batches: "queue.Queue[Any]") -> None:
        while True:
            docs = batches.get()
            try:
                if docs is _STOP:
                    return
                if self.error is None:
                    try:
                        self.do_sync(docs)
                    except Exception as err:
                        self.error = err
                        _logger.critical("%s sync failed: %s", self, err)
            finally:
                batches.task_done()

    def do_sync(self, docs: Sequence[bytes]) -> None:
        """Insert the documents, resolving duplicate key errors one by one."""
        if not docs or self.debug:
            return
        if self.throttle is not None:
            self.throttle()

        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug("%s doSync batch _id interval [%s, %s]", self,
                          bson.decode(docs[0]).get("_id"), bson.decode(docs[-1]).get("_id"))

        try:
            self.collection.insert_many([RawBSONDocument(data) for data in docs], ordered=True)
        except BulkWriteError as err:
            _logger.warning("insert docs with length[%d] into ns[%s] of dest mongo failed[%s]",
                            len(docs), self.collection.full_name, err)
            write_errors = err.details.get("writeErrors") or []
            if not write_errors:
                raise DocSyncError(f"bulk run failed[{err}]") from err
            first = min(write_errors, key=lambda item: item["index"])
            index = first["index"]
            if first.get("code") not in _DUPLICATE_CODES:
                raise DocSyncError(
                    f"bulk run message[{bson.decode(docs[index])}], "
                    f"failed[{first.get('errmsg')}], index[{index}] dup[False]") from err
            _logger.warning("dup error found, try to solve error")
            self._try_one_by_one(docs, index)
        except PyMongoError as err:
            raise DocSyncError(f"bulk run failed[{err}]") from err

    def _try_one_by_one(self, docs: Sequence[bytes], index: int) -> None:
        for data in docs[index:]:
            doc = bson.decode(data)
            try:
                self.collection.insert_one(doc)
                continue
            except DuplicateKeyError as err:
                dup_error = err

            doc_id = doc.get("_id")
            if self.filter_orphan_document and self.orphan_filter is not None:
                if self.orphan_filter.filter(doc, self.collection.full_name):
                    _logger.info("orphan document with _id[%s] filter", doc_id)
                    continue

            if not self.insert_on_dup_update:
                raise DocSyncError(
                    f"duplicate key error[{dup_error}], you can clean the document on the "
                    f"target mongodb, or enable full_sync.executor.insert_on_dup_update to "
                    f"solve, but full-sync stage needs restart") from dup_error
            if doc_id is None:
                raise DocSyncError(f"parse '_id' from document[{doc}] failed")
            try:
                self.collection.replace_one({"_id": doc_id}, doc)
            except PyMongoError as err:
                raise DocSyncError(f"convert oplog[{doc}] from insert to update run "
                                   f"failed[{err}]") from err


class CollectionExecutor:
    """Feeds document batches of one collection to several parallel writers."""

    def __init__(self, executor_id: int, mongo_url: str, ns: Namespace, *,
                 parallel: int = 8,
                 client_factory: Optional[Callable[[str], Any]] = None,
                 majority_write: bool = False,
                 debug: bool = False,
                 orphan_filter: Optional[OrphanFilter] = None,
                 filter_orphan_document: bool = False,
                 insert_on_dup_update: bool = False,
                 throttle: Optional[Callable[[], None]] = None) -> None:
        if parallel <= 0:
            raise ValueError("parallel must be positive")
        self.executor_id = executor_id
        self.mongo_url = mongo_url
        self.ns = ns
        self.parallel = parallel
        self.majority_write = majority_write
        self.debug = debug
        self._client_factory = client_factory or _default_client
        self._executor_options = dict(orphan_filter=orphan_filter,
                                      filter_orphan_document=filter_orphan_document,
                                      insert_on_dup_update=insert_on_dup_update,
                                      throttle=throttle, debug=debug)
        self._client: Any = None
        self._batches: "queue.Queue[Any]" = queue.Queue(maxsize=parallel)
        self.executors: list[DocExecutor] = []
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Connect to the target and start the writers."""
        collection = None
        if not self.debug:
            self._client = self._client_factory(self.mongo_url)
            collection = self._client[self.ns.database][self.ns.collection]
            if self.majority_write:
                collection = collection.with_options(write_concern=WriteConcern("majority"))

        for _ in range(self.parallel):
            executor = DocExecutor(generate_doc_executor_id(), collection,
                                   **self._executor_options)
            thread = threading.Thread(target=executor._serve, args=(self._batches,),
                                      name=str(executor), daemon=True)
            thread.start()
            self.executors.append(executor)
            self._threads.append(thread)

    def sync(self, docs: Sequence[bytes]) -> None:
        """Queue a batch for writing; empty batches are ignored."""
        if not docs:
            return
        self._batches.put(list(docs))

    def wait(self) -> None:
        """Wait for every queued batch, stop the writers and report the first error."""
        self._batches.join()
        for _ in self._threads:
            self._batches.put(_STOP)
        for thread in self._threads:
            thread.join()
        if self._client is not None:
            self._client.close()
            self._client = None

        for executor in self.executors:
            if executor.error is not None:
                raise DocSyncError(f"sync ns {self.ns} failed. {executor.error}") \
                    from executor.error