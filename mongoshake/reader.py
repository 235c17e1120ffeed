"""Readers that pull oplog entries or change stream events from a source."""

from __future__ import annotations

import abc
import logging
import queue
import threading
import time
from typing import Any, Callable, Optional

import bson
import pymongo
from bson.codec_options import CodecOptions
from bson.raw_bson import RawBSONDocument
from bson.timestamp import Timestamp
from pymongo.cursor import CursorType
from pymongo.errors import PyMongoError

from mongoshake.filters import OplogEntry

_logger = logging.getLogger(__name__)

BATCH_SIZE = 8192
PREFETCH_PERCENT = 0.2

FETCH_METHOD_OPLOG = "oplog"
FETCH_METHOD_CHANGE_STREAM = "change_stream"

QUERY_TS = "ts"
QUERY_GID = "g"
QUERY_OP_GT = "$gt"

LOCAL_DB = "local"
OPLOG_NS = "oplog.rs"

# a checkpoint value meaning "nothing recorded yet"
INIT_CHECKPOINT = 1

_CAPPED_POSITION_LOST = 136
_RAW_CODEC = CodecOptions(document_class=RawBSONDocument)

ClientFactory = Callable[[str], Any]


class ReaderTimeout(Exception):
    """No entry arrived within the reader's buffer time."""


class CollectionCappedError(Exception):
    """The oplog rolled over past the position being read."""


def _default_client_factory(src: str) -> Any:
    return pymongo.MongoClient(src)


def _to_bson_ts(value: int) -> Timestamp:
    return Timestamp(value >> 32, value & 0xFFFFFFFF)


def _from_bson_ts(value: Any) -> int:
    if isinstance(value, Timestamp):
        return (value.time << 32) | value.inc
    return int(value)


def _ts_for_log(value: Any) -> str:
    if isinstance(value, (int, Timestamp)):
        number = _from_bson_ts(value)
        return f"{number >> 32}:{number & 0xFFFFFFFF}"
    return str(value)


def _is_capped_error(err: Exception) -> bool:
    if getattr(err, "code", None) == _CAPPED_POSITION_LOST:
        return True
    text = str(err)
    return "CappedPositionLost" in text or "capped position lost" in text.lower()


def _block_password(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if not sep or "@" not in rest:
        return url
    credentials, _, host = rest.rpartition("@")
    user, colon, _ = credentials.partition(":")
    return f"{scheme}://{user}{':***' if colon else ''}@{host}"


class _BufferedReader(abc.ABC):
    """Shared machinery: a background fetcher feeding a bounded queue."""

    def __init__(self, src: str, replset: str, buffer_time: float,
                 client_factory: Optional[ClientFactory], queue_size: int) -> None:
        self.src = src
        self.replset = replset
        self.buffer_time = buffer_time
        self._client_factory = client_factory or _default_client_factory
        self._client: Any = None
        self._queue: "queue.Queue[tuple[Optional[bytes], Optional[Exception]]]" = \
            queue.Queue(maxsize=queue_size)
        self._fetcher_started = False
        self._fetcher_lock = threading.Lock()

    def __str__(self) -> str:
        return f"{type(self).__name__}[src:{_block_password(self.src)} replset:{self.replset}]"

    def _ensure_client(self) -> Any:
        if self._client is None:
            self._client = self._client_factory(self.src)
        return self._client

    def _start_fetcher_once(self) -> None:
        if self._fetcher_started:
            return
        with self._fetcher_lock:
            if not self._fetcher_started:
                self._fetcher_started = True
                threading.Thread(target=self._fetch_loop, name=str(self), daemon=True).start()

    def _take(self) -> bytes:
        try:
            data, err = self._queue.get(timeout=self.buffer_time)
        except queue.Empty:
            raise ReaderTimeout("read next log timeout") from None
        if err is not None:
            raise err
        return data  # type: ignore[return-value]

    def _put(self, data: Optional[bytes], err: Optional[Exception]) -> None:
        self._queue.put((data, err))

    @abc.abstractmethod
    def _fetch_loop(self) -> None:
        """Fetch entries forever, handing them to the queue."""


class OplogReader(_BufferedReader):
    """Tails the oplog collection of one replica set member."""

    def __init__(self, src: str, replset: str, *, buffer_time: float = 1.0,
                 client_factory: Optional[ClientFactory] = None) -> None:
        # the driver already prefetches, so the hand-off is kept minimal
        super().__init__(src, replset, buffer_time, client_factory, queue_size=1)
        self.query: dict[str, Any] = {}
        self._cursor: Any = None
        self._first_read = True

    def name(self) -> str:
        return FETCH_METHOD_OPLOG

    def start_fetcher(self) -> None:
        """Start the background fetcher once."""
        self._start_fetcher_once()

    def next(self) -> bytes:
        """Return the next entry as raw BSON, raising on fetch errors or timeout."""
        return self._take()

    def set_query_timestamp_on_empty(self, ts: Any) -> None:
        """Set the starting timestamp unless one is already set."""
        if QUERY_TS not in self.query:
            _logger.info("set query timestamp: %s", _ts_for_log(ts))
            self.update_query_timestamp(ts)

    def update_query_timestamp(self, ts: Any) -> None:
        self.query[QUERY_TS] = {QUERY_OP_GT: _from_bson_ts(ts)}

    def _query_timestamp(self) -> int:
        return self.query[QUERY_TS][QUERY_OP_GT]

    def _mongo_query(self) -> dict[str, Any]:
        query = dict(self.query)
        if QUERY_TS in query:
            query[QUERY_TS] = {QUERY_OP_GT: _to_bson_ts(self._query_timestamp())}
        return query

    def next_oplog(self) -> tuple[bytes, OplogEntry]:
        """Return the next entry both raw and parsed."""
        raw = self.next()
        doc = bson.decode(raw)
        entry = OplogEntry(
            namespace=doc.get("ns", ""),
            operation=doc.get("op", ""),
            object=doc.get("o", {}) or {},
            gid=doc.get("g", ""),
            from_migrate=bool(doc.get("fromMigrate", False)),
            timestamp=_from_bson_ts(doc.get("ts", 0)),
        )
        return raw, entry

    def _oplog_collection(self) -> Any:
        return self._ensure_client()[LOCAL_DB].get_collection(OPLOG_NS, codec_options=_RAW_CODEC)

    def _edge_timestamp(self, direction: int) -> int:
        try:
            cursor = self._oplog_collection().find(
                {}, sort=[("$natural", direction)], limit=1)
            for doc in cursor:
                return _from_bson_ts(doc[QUERY_TS])
        except PyMongoError as err:
            _logger.warning("%s fetch oplog edge timestamp failed: %s", self, err)
        return 0

    def ensure_network(self) -> None:
        """Open the tailing cursor if there is none."""
        if self._cursor is not None:
            return
        _logger.info("%s ensure network", self)
        self._ensure_client()

        if self._first_read:
            newest = self._edge_timestamp(-1)
            if newest < self._query_timestamp():
                _logger.warning("oplog_reader current starting point[%s] is bigger than the "
                                "newest timestamp[%s]!",
                                _ts_for_log(self._query_timestamp()), _ts_for_log(newest))

        oldest = self._edge_timestamp(1)
        query_ts = self._query_timestamp()
        if oldest > query_ts:
            if not self._first_read:
                raise CollectionCappedError("collection capped error")
            _logger.warning("oplog_reader current starting point[%s] is smaller than the "
                            "oldest timestamp[%s]!", _ts_for_log(query_ts), _ts_for_log(oldest))
        self._first_read = False

        self._cursor = self._oplog_collection().find(
            self._mongo_query(),
            cursor_type=CursorType.TAILABLE_AWAIT,
            batch_size=BATCH_SIZE,
        )

    def _release_cursor(self) -> None:
        if self._cursor is not None:
            self._cursor.close()
        self._cursor = None

    def _fetch_loop(self) -> None:
        _logger.info("start fetcher with src[%s] replica-name[%s] query-ts[%s]",
                     _block_password(self.src), self.replset,
                     _ts_for_log(self.query.get(QUERY_TS, {}).get(QUERY_OP_GT, 0)))
        while True:
            try:
                self.ensure_network()
            except Exception as err:  # reported to the consumer
                self._put(None, err)
                continue

            try:
                doc = next(self._cursor)
            except StopIteration:
                if not getattr(self._cursor, "alive", False):
                    self._release_cursor()
                self._put(None, ReaderTimeout("read next log timeout"))
                continue
            except PyMongoError as err:
                self._release_cursor()
                if _is_capped_error(err):
                    _logger.error("oplog collection capped may happen: %s", err)
                    self._put(None, CollectionCappedError(str(err)))
                else:
                    self._put(None, err)
                time.sleep(1)
                continue

            self._put(doc.raw if isinstance(doc, RawBSONDocument) else bson.encode(doc), None)

    def fetch_newest_timestamp(self) -> Any:
        raise NotImplementedError("the oplog reader cannot fetch a resume token")


class GidOplogReader(OplogReader):
    """An oplog reader that also restricts entries to one gid."""

    def __init__(self, src: str, *, buffer_time: float = 1.0,
                 client_factory: Optional[ClientFactory] = None) -> None:
        super().__init__(src, "", buffer_time=buffer_time, client_factory=client_factory)
        self._first_read = False

    def set_query_gid(self, gid: str) -> None:
        self.query[QUERY_GID] = gid


class EventReader(_BufferedReader):
    """Reads change stream events from a deployment."""

    def __init__(self, src: str, replset: str, *, buffer_time: float = 1.0,
                 client_factory: Optional[ClientFactory] = None,
                 full_document: bool = False,
                 ns_filter: Optional[Callable[[str], bool]] = None) -> None:
        super().__init__(src, replset, buffer_time, client_factory,
                         queue_size=int(BATCH_SIZE * PREFETCH_PERCENT))
        self.full_document = full_document
        self.ns_filter = ns_filter
        self.start_at: Any = None
        self._stream: Any = None

    def name(self) -> str:
        return FETCH_METHOD_CHANGE_STREAM

    def start_fetcher(self) -> None:
        """Start the background fetcher once."""
        self._start_fetcher_once()

    def next(self) -> bytes:
        """Return the next event as raw BSON, raising on fetch errors or timeout."""
        return self._take()

    def set_query_timestamp_on_empty(self, ts: Any) -> None:
        """Set the start position (timestamp or resume token) unless already set."""
        if self.start_at is not None or ts == INIT_CHECKPOINT:
            return
        _logger.info("set query timestamp: %s", _ts_for_log(ts))
        if isinstance(ts, (int, Timestamp)):
            self.start_at = _from_bson_ts(ts)
        else:
            self.start_at = ts

    def update_query_timestamp(self, ts: Any) -> None:
        self.start_at = _from_bson_ts(ts)

    def ensure_network(self) -> None:
        """Open the change stream if there is none."""
        if self._stream is not None:
            return
        _logger.info("%s ensure network", self)
        options: dict[str, Any] = {"batch_size": BATCH_SIZE}
        if self.full_document:
            options["full_document"] = "updateLookup"
        if isinstance(self.start_at, int):
            options["start_at_operation_time"] = _to_bson_ts(self.start_at)
        elif self.start_at is not None:
            options["resume_after"] = self.start_at
        self._stream = self._ensure_client().watch(pipeline=[], **options)

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()
        self._stream = None

    def _skipped(self, event: Any) -> bool:
        if self.ns_filter is None:
            return False
        ns = event.get("ns") if hasattr(event, "get") else None
        if not ns:
            return False
        database = ns.get("db", "")
        collection = ns.get("coll")
        namespace = f"{database}.{collection}" if collection else f"{database}.$cmd"
        return self.ns_filter(namespace)

    def _fetch_loop(self) -> None:
        _logger.info("start fetcher with src[%s] replica-name[%s] query-ts[%s]",
                     _block_password(self.src), self.replset, _ts_for_log(self.start_at))
        while True:
            try:
                self.ensure_network()
            except Exception as err:  # reported to the consumer
                self._put(None, err)
                continue

            try:
                event = self._stream.next()
            except (PyMongoError, StopIteration) as err:
                self._close_stream()
                _logger.error("change stream reader hit the end: %s", err)
                time.sleep(1)
                continue

            if self._skipped(event):
                continue
            raw = event.raw if isinstance(event, RawBSONDocument) else bson.encode(event)
            self._put(raw, None)

    def fetch_newest_timestamp(self) -> Any:
        """Return the resume token of the stream's current position."""
        self.ensure_network()
        self._stream.try_next()
        return self._stream.resume_token


def create_reader(fetch_method: str, src: str, replset: str) -> _BufferedReader:
    """Create the reader for the given fetch method."""
    if fetch_method == FETCH_METHOD_OPLOG:
        return OplogReader(src, replset)
    if fetch_method == FETCH_METHOD_CHANGE_STREAM:
        return EventReader(src, replset)
    raise ValueError(f"unknown reader type[{fetch_method}]")