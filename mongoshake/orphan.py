"""Detection of orphan documents that do not belong to the shard's chunks."""

from __future__ import annotations

import hashlib
import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from bson.max_key import MaxKey
from bson.min_key import MinKey
from bson.objectid import ObjectId

_logger = logging.getLogger(__name__)

# type ordering as used by the server's bson type ranking
BSON_INVALID = -1
BSON_MIN_KEY = 0
BSON_TYPE_NUMBER = 10
BSON_TYPE_STRING = 15
BSON_TYPE_OID = 35
BSON_MAX_KEY = 100

_UINT64_MASK = (1 << 64) - 1


class ShardType(Enum):
    RANGED = "ranged"
    HASHED = "hashed"


@dataclass
class ChunkRange:
    """A chunk [mins, maxs) over the shard key fields."""

    mins: list[Any]
    maxs: list[Any]


@dataclass
class ShardCollection:
    chunks: list[ChunkRange] = field(default_factory=list)
    keys: list[str] = field(default_factory=list)
    shard_type: ShardType = ShardType.RANGED


class OrphanFilter:
    """Tells whether a document lies outside every chunk owned by a shard."""

    def __init__(self, replset: str,
                 chunk_map: Optional[Mapping[str, ShardCollection]]) -> None:
        self.replset = replset
        self.chunk_map = chunk_map

    def filter(self, doc: Mapping[str, Any], namespace: str) -> bool:
        """Return True when the document is an orphan and should be skipped."""
        if self.chunk_map is None:
            _logger.warning("chunk map is nil")
            return False

        shard_col = self.chunk_map.get(namespace)
        if shard_col is None:
            return False

        cache: dict[str, Any] = {}

        def key_value(name: str) -> Any:
            if name not in cache:
                value = doc.get(name)
                if value is None:
                    raise KeyError(f"no shard key {name!r} in document {doc!r}")
                if shard_col.shard_type is ShardType.HASHED:
                    value = compute_hash(value)
                cache[name] = value
            return cache[name]

        if any(_in_chunk(key_value, shard_col.keys, chunk) for chunk in shard_col.chunks):
            return False

        _logger.warning("document syncer %s filter orphan document %s with shard key %s in ns[%s]",
                        self.replset, doc, shard_col.keys, namespace)
        return True


def _in_chunk(key_value: Callable[[str], Any], keys: list[str], chunk: ChunkRange) -> bool:
    for name, bound in zip(keys, chunk.mins):
        value = key_value(name)
        if chunk_lt(value, bound):
            return False
        if chunk_gt(value, bound):
            break
    for name, bound in zip(keys, chunk.maxs):
        value = key_value(name)
        if chunk_gt(value, bound):
            return False
        if chunk_lt(value, bound):
            return True
    # equal to the upper bound on every key: the bound is exclusive
    return not keys


def compute_hash(data: Any) -> int:
    """Hash a shard key value the way hashed sharding does (seed 0, md5)."""
    digest = hashlib.md5(struct.pack("<I", 0))
    if isinstance(data, bool):
        raise TypeError(f"compute_hash unsupported bson type {type(data).__name__}")
    if isinstance(data, str):
        raw = data.encode("utf-8")
        digest.update(struct.pack("<II", BSON_TYPE_STRING, len(raw) + 1))
        digest.update(raw + b"\x00")
    elif isinstance(data, (int, float)):
        digest.update(struct.pack("<IQ", BSON_TYPE_NUMBER, int(data) & _UINT64_MASK))
    elif isinstance(data, ObjectId):
        digest.update(struct.pack("<I", BSON_TYPE_OID))
        digest.update(data.binary)
    else:
        raise TypeError(f"compute_hash unsupported bson type {type(data).__name__}")
    return struct.unpack("<q", digest.digest()[:8])[0]


def _bson_type(x: Any) -> tuple[int, Any]:
    if isinstance(x, MinKey):
        return BSON_MIN_KEY, None
    if isinstance(x, MaxKey):
        return BSON_MAX_KEY, None
    if isinstance(x, bool):
        raise TypeError(f"chunk comparison meets unknown type {type(x).__name__}")
    if isinstance(x, (int, float)):
        return BSON_TYPE_NUMBER, float(x)
    if isinstance(x, str):
        return BSON_TYPE_STRING, x
    if isinstance(x, ObjectId):
        return BSON_TYPE_OID, str(x)
    raise TypeError(f"chunk comparison meets unknown type {type(x).__name__}")


def _compare(x: Any, y: Any) -> int:
    x_type, x_value = _bson_type(x)
    y_type, y_value = _bson_type(y)
    if x_type != y_type:
        return (x_type > y_type) - (x_type < y_type)
    if x_type in (BSON_MIN_KEY, BSON_MAX_KEY):
        return 0
    if x_type in (BSON_TYPE_NUMBER, BSON_TYPE_STRING):
        return (x_value > y_value) - (x_value < y_value)
    raise TypeError(f"chunk comparison meets unknown type {x_type}")


def chunk_gt(x: Any, y: Any) -> bool:
    return _compare(x, y) > 0


def chunk_lt(x: Any, y: Any) -> bool:
    return _compare(x, y) < 0


def chunk_equal(x: Any, y: Any) -> bool:
    return _compare(x, y) == 0