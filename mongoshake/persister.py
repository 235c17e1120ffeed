"""Batches fetched oplog entries into the pending queues, spilling to disk when asked."""

from __future__ import annotations

import logging
import queue
import struct
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import bson
from bson.timestamp import Timestamp

from mongoshake.reader import FETCH_METHOD_OPLOG

_logger = logging.getLogger(__name__)

DISK_READ_BATCH = 10000

READER_DEBUG_NONE = "none"
READER_DEBUG_DISCARD = "discard"
READER_DEBUG_PRINT = "print"

_LENGTH = struct.Struct(">I")


class FetchStage(Enum):
    """Where fetched entries go and whether they are applied yet."""

    STORE_UNKNOWN = "store unknown"
    STORE_DISK_NO_APPLY = "store disk and no apply"
    STORE_DISK_APPLY = "store disk and apply"
    STORE_MEMORY_APPLY = "store memory and apply"


def _ts_to_int(value: Any) -> int:
    if isinstance(value, Timestamp):
        return (value.time << 32) | value.inc
    return int(value)


class DiskQueue:
    """A file-backed FIFO of byte records that survives restarts."""

    def __init__(self, name: str, directory: str | Path,
                 batch_count: int = DISK_READ_BATCH) -> None:
        if batch_count <= 0:
            raise ValueError("batch_count must be positive")
        self.name = name
        self.batch_count = batch_count
        base = Path(directory)
        base.mkdir(parents=True, exist_ok=True)
        self._data_path = base / f"{name}.diskqueue.dat"
        self._meta_path = base / f"{name}.diskqueue.meta"
        self._lock = threading.Lock()
        self._read_pos = int(self._meta_path.read_text()) if self._meta_path.exists() else 0
        self._depth, self._last = self._scan()
        self._file: Optional[Any] = open(self._data_path, "ab")

    def _records(self, handle: Any) -> Iterator[tuple[int, bytes]]:
        """Yield (offset after record, record) from the handle's position."""
        while True:
            header = handle.read(_LENGTH.size)
            if len(header) < _LENGTH.size:
                return
            (length,) = _LENGTH.unpack(header)
            data = handle.read(length)
            if len(data) < length:
                return
            yield handle.tell(), data

    def _scan(self) -> tuple[int, bytes]:
        if not self._data_path.exists():
            return 0, b""
        depth = 0
        last = b""
        with open(self._data_path, "rb") as handle:
            for end, data in self._records(handle):
                last = data
                if end > self._read_pos:
                    depth += 1
        return depth, last

    def _writer(self) -> Any:
        if self._file is None:
            raise ValueError(f"disk queue {self.name} is deleted")
        return self._file

    def put(self, data: bytes) -> None:
        """Append one record."""
        with self._lock:
            writer = self._writer()
            writer.write(_LENGTH.pack(len(data)))
            writer.write(data)
            writer.flush()
            self._depth += 1
            self._last = bytes(data)

    def _read(self, limit: Optional[int]) -> list[bytes]:
        with self._lock:
            self._writer().flush()
            result: list[bytes] = []
            with open(self._data_path, "rb") as handle:
                handle.seek(self._read_pos)
                for end, data in self._records(handle):
                    if limit is not None and len(result) >= limit:
                        break
                    result.append(data)
                    self._read_pos = end
            self._depth -= len(result)
            self._meta_path.write_text(str(self._read_pos))
            return result

    def read_all(self) -> list[bytes]:
        """Consume and return every unread record."""
        return self._read(None)

    def last_write(self) -> bytes:
        """Return the most recently written record, or b"" if there is none."""
        with self._lock:
            return self._last

    def depth(self) -> int:
        """Return the number of unread records."""
        with self._lock:
            return self._depth

    def delete(self) -> None:
        """Close the queue and remove its files."""
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
            self._data_path.unlink(missing_ok=True)
            self._meta_path.unlink(missing_ok=True)
            self._depth = 0


class Persister:
    """Collects fetched entries into batches and hands them out round-robin."""

    def __init__(self, replset: str, pending_queues: Sequence["queue.Queue[list[bytes]]"], *,
                 buffer_capacity: int = 256,
                 enable_disk_persist: bool = False,
                 fetch_method: str = FETCH_METHOD_OPLOG,
                 reader_debug: str = READER_DEBUG_NONE,
                 log_directory: str | Path = "logs",
                 disk_batch_count: int = DISK_READ_BATCH,
                 poll_interval: float = 3.0) -> None:
        if not pending_queues:
            raise ValueError("at least one pending queue is required")
        self.replset = replset
        self.pending_queues = list(pending_queues)
        self.buffer_capacity = buffer_capacity
        self.enable_disk_persist = enable_disk_persist
        self.fetch_method = fetch_method
        self.reader_debug = reader_debug
        self.log_directory = Path(log_directory)
        self.disk_batch_count = disk_batch_count
        self.poll_interval = poll_interval

        self.buffer: list[bytes] = []
        self._next_queue_position = 0
        self._stage = FetchStage.STORE_UNKNOWN
        self._stage_lock = threading.Lock()
        self.disk_queue: Optional[DiskQueue] = None
        self._disk_lock = threading.Lock()
        self.disk_queue_last_ts = -1
        self._counter_lock = threading.Lock()
        self._disk_write_count = 0
        self._disk_read_count = 0

    @property
    def fetch_stage(self) -> FetchStage:
        with self._stage_lock:
            return self._stage

    @fetch_stage.setter
    def fetch_stage(self, stage: FetchStage) -> None:
        _logger.info("persister replset[%s] update fetch status to: %s", self.replset, stage.value)
        with self._stage_lock:
            self._stage = stage

    def start(self) -> None:
        """Start the disk retriever in the background when disk persist is on."""
        if self.enable_disk_persist:
            threading.Thread(target=self.retrieve, name=f"retrieve-{self.replset}",
                             daemon=True).start()

    def init_disk_queue(self, name: str) -> None:
        """Create the disk queue; only legal in a disk-storing stage."""
        stage = self.fetch_stage
        if stage not in (FetchStage.STORE_DISK_NO_APPLY, FetchStage.STORE_DISK_APPLY):
            raise RuntimeError(f"persister replset[{self.replset}] init disk queue in "
                               f"illegal fetch stage {stage.value}")
        if self.disk_queue is not None:
            raise RuntimeError("init disk queue failed: already exist")
        self.disk_queue = DiskQueue(name, self.log_directory, self.disk_batch_count)

    def query_ts_from_disk_queue(self) -> int:
        """Return the timestamp of the last entry written to disk, or 0."""
        if self.disk_queue is None:
            raise RuntimeError(f"persister replset[{self.replset}] get query timestamp "
                               f"from nil disk queue")
        data = self.disk_queue.last_write()
        if not data:
            return 0
        doc = bson.decode(data)
        if self.fetch_method == FETCH_METHOD_OPLOG:
            if not doc.get("ns"):
                raise ValueError(f"unmarshal data to oplog failed: {doc}")
            return _ts_to_int(doc.get("ts", 0))
        if not doc.get("operationType"):
            raise ValueError(f"unmarshal data to change stream event failed: {doc}")
        return _ts_to_int(doc.get("clusterTime", 0))

    def inject(self, data: Optional[bytes]) -> None:
        """Accept one fetched entry; None flushes the current batch."""
        if self.reader_debug == READER_DEBUG_DISCARD:
            return
        if self.reader_debug == READER_DEBUG_PRINT and data is not None:
            _logger.info("print debug: %s", bson.decode(data))

        if not self.enable_disk_persist:
            self.push_to_pending_queue(data)
            return

        stage = self.fetch_stage
        if stage is FetchStage.STORE_MEMORY_APPLY:
            self.push_to_pending_queue(data)
            return
        if self.disk_queue is None:
            raise RuntimeError(f"persister inject replset[{self.replset}] has no disk queue "
                               f"with fetch stage[{stage.value}]")
        if data is None:
            return
        with self._disk_lock:
            if self.disk_queue is not None:
                self.disk_queue.put(data)
                with self._counter_lock:
                    self._disk_write_count += 1
            else:
                self.push_to_pending_queue(data)

    def push_to_pending_queue(self, data: Optional[bytes]) -> None:
        """Buffer the entry and hand a full (or flushed) batch to the next queue."""
        flush = data is None
        if data is not None:
            self.buffer.append(data)
        if len(self.buffer) >= self.buffer_capacity or (flush and self.buffer):
            selected = self._next_queue_position % len(self.pending_queues)
            self.pending_queues[selected].put(self.buffer)
            self.buffer = []
            self._next_queue_position += 1

    def _count_read(self, count: int) -> None:
        with self._counter_lock:
            self._disk_read_count += count

    def retrieve(self) -> None:
        """Wait for the disk-apply stage, drain the disk queue, then switch to memory."""
        while True:
            stage = self.fetch_stage
            if stage is FetchStage.STORE_DISK_APPLY:
                break
            if stage not in (FetchStage.STORE_UNKNOWN, FetchStage.STORE_DISK_NO_APPLY):
                raise RuntimeError(f"invalid fetch stage[{stage.value}]")
            time.sleep(self.poll_interval)

        disk_queue = self.disk_queue
        if disk_queue is None:
            raise RuntimeError(f"persister replset[{self.replset}] has no disk queue to retrieve")
        _logger.info("persister retrieve for replset[%s] begin to read from disk queue "
                     "with depth[%d]", self.replset, disk_queue.depth())

        while disk_queue.depth() >= disk_queue.batch_count:
            batch = disk_queue._read(disk_queue.batch_count)
            self._count_read(len(batch))
            for data in batch:
                self.push_to_pending_queue(data)

        _logger.info("persister retrieve for replset[%s] block fetch with disk queue depth[%d]",
                     self.replset, disk_queue.depth())
        with self._disk_lock:
            remaining = disk_queue.read_all()
            if remaining:
                self._count_read(len(remaining))
                for data in remaining:
                    self.push_to_pending_queue(data)
                self.disk_queue_last_ts = self.query_ts_from_disk_queue()
            if disk_queue.depth() != 0:
                raise RuntimeError(f"persister retrieve for replset[{self.replset}] finish, but "
                                   f"disk queue depth[{disk_queue.depth()}] is not empty")
            self.fetch_stage = FetchStage.STORE_MEMORY_APPLY
            try:
                disk_queue.delete()
            except OSError as err:
                _logger.critical("persister retrieve for replset[%s] close disk queue error. %s",
                                 self.replset, err)
        _logger.info("persister retriever for replset[%s] exits", self.replset)

    def status(self) -> dict[str, Any]:
        """Return the persister's state as reported by the status API."""
        with self._counter_lock:
            writes, reads = self._disk_write_count, self._disk_read_count
        return {
            "buffer_used": len(self.buffer),
            "buffer_size": self.buffer_capacity,
            "enable_disk_persist": self.enable_disk_persist,
            "fetch_stage": self.fetch_stage.value,
            "disk_write_count": writes,
            "disk_read_count": reads,
        }