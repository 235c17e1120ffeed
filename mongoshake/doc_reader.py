"""Reading one collection in _id-ordered pieces for the full sync."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterator, Optional

import bson
import pymongo
from bson.codec_options import CodecOptions
from bson.raw_bson import RawBSONDocument
from pymongo.errors import PyMongoError

from mongoshake.filters import Namespace
from mongoshake.reader import _block_password

_logger = logging.getLogger(__name__)

# how many piece readers a collection is read with at most
SPLITTER_READER = 4
READER_BATCH_SIZE = 8192

_RAW_CODEC = CodecOptions(document_class=RawBSONDocument)

ClientFactory = Callable[[str], Any]


def _default_client(url: str) -> Any:
    return pymongo.MongoClient(url)


def build_range_query(start: Any, end: Any) -> dict[str, Any]:
    """Build the query selecting documents with start < _id <= end."""
    bounds: dict[str, Any] = {}
    if start is not None:
        bounds["$gt"] = start
    if end is not None:
        bounds["$lte"] = end
    return {"_id": bounds} if bounds else {}


class DocumentReader:
    """Reads the documents of one piece of a collection as raw BSON."""

    def __init__(self, src: str, ns: Namespace, start: Any = None, end: Any = None, *,
                 client_factory: Optional[ClientFactory] = None,
                 batch_size: int = READER_BATCH_SIZE) -> None:
        self.src = src
        self.ns = ns
        self.query = build_range_query(start, end)
        self.batch_size = batch_size
        self._client_factory = client_factory or _default_client
        self._client: Any = None
        self._cursor: Any = None
        self._rebuild = 0

    def __str__(self) -> str:
        return (f"DocumentReader src[{_block_password(self.src)}] ns[{self.ns}] "
                f"query[{self.query}]")

    def __enter__(self) -> "DocumentReader":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _ensure_cursor(self) -> Any:
        if self._cursor is not None:
            return self._cursor
        if self._client is None:
            _logger.info("reader[%s] client is empty, create one", self)
            self._client = self._client_factory(self.src)

        self._rebuild += 1
        if self._rebuild > 1:
            raise RuntimeError(f"reader[{self}] rebuild illegal")

        collection = self._client[self.ns.database].get_collection(
            self.ns.collection, codec_options=_RAW_CODEC)
        self._cursor = collection.find(
            self.query,
            sort=[("_id", 1)],
            batch_size=self.batch_size,
            hint=[("_id", 1)],
            no_cursor_timeout=True,
            comment=(f"mongo-shake full sync: ns[{self.ns}] query[{self.query}] "
                     f"rebuid-times[{self._rebuild}]"),
        )
        _logger.info("reader[%s] generates new cursor", self)
        return self._cursor

    def _release_cursor(self) -> None:
        if self._cursor is not None:
            try:
                self._cursor.close()
            except PyMongoError as err:
                _logger.error("release cursor fail: %s", err)
        self._cursor = None

    def next_doc(self) -> Optional[bytes]:
        """Return the next document as raw BSON, or None when the piece is done."""
        cursor = self._ensure_cursor()
        try:
            doc = next(cursor)
        except StopIteration:
            _logger.info("reader[%s] finish", self)
            return None
        except PyMongoError:
            self._release_cursor()
            raise
        return doc.raw if isinstance(doc, RawBSONDocument) else bson.encode(doc)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            doc = self.next_doc()
            if doc is None:
                return
            yield doc

    def close(self) -> None:
        """Close the cursor and the connection."""
        _logger.info("reader[%s] close", self)
        self._release_cursor()
        if self._client is not None:
            self._client.close()
            self._client = None


class DocumentSplitter:
    """Splits a collection into _id ranges of at most piece_size documents."""

    def __init__(self, src: str, ns: Namespace, piece_size: int = 0, *,
                 client_factory: Optional[ClientFactory] = None) -> None:
        self.src = src
        self.ns = ns
        self.piece_size = piece_size
        self._client_factory = client_factory or _default_client
        self._client = self._client_factory(src)
        self.count = int(self._client[ns.database][ns.collection].count_documents({}))
        if piece_size <= 0:
            self.piece_number = 1
        else:
            self.piece_number = -(-self.count // piece_size)

    def __str__(self) -> str:
        return (f"DocumentSplitter src[{_block_password(self.src)}] ns[{self.ns}] "
                f"count[{self.count}] pieceSize[{self.piece_size}] "
                f"pieceNumber[{self.piece_number}]")

    def __enter__(self) -> "DocumentSplitter":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _reader(self, start: Any, end: Any) -> DocumentReader:
        return DocumentReader(self.src, self.ns, start, end,
                              client_factory=self._client_factory)

    def readers(self) -> Iterator[DocumentReader]:
        """Yield one reader per piece, in _id order."""
        if self.piece_number == 1:
            _logger.info("splitter[%s] disable split or no need", self)
            yield self._reader(None, None)
            _logger.info("splitter[%s] exits", self)
            return

        _logger.info("splitter[%s] enable split: piece size[%d], count[%d]",
                     self, self.piece_size, self.count)
        collection = self._client[self.ns.database][self.ns.collection]
        start: Any = None
        remaining = self.count
        piece = 0
        while remaining > 0:
            window = min(self.piece_size, remaining)
            query = {} if start is None else {"_id": {"$gt": start}}
            boundary = next(iter(collection.find(query, sort=[("_id", 1)],
                                                 skip=window - 1, limit=1)), None)
            if boundary is None:
                raise RuntimeError(f"splitter[{self}] piece[{piece}] with query[{query}] and "
                                   f"skip[{window - 1}] fetch boundary failed")
            end = boundary["_id"]
            _logger.info("splitter[%s] piece[%d] create reader with boundary(%s, %s]",
                         self, piece, start, end)
            yield self._reader(start, end)
            start = end
            remaining -= window
            piece += 1
        _logger.info("splitter[%s] exits", self)

    def close(self) -> None:
        """Close the splitter's connection."""
        self._client.close()