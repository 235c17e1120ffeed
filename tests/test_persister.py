import queue

import bson
import pytest
from bson.timestamp import Timestamp

from mongoshake.persister import DiskQueue, FetchStage, Persister
from mongoshake.reader import FETCH_METHOD_CHANGE_STREAM


def oplog_bytes(i=0):
    return bson.encode({"ns": "a.b", "ts": Timestamp(5, i), "op": "i"})


def make_queues(n=4):
    return [queue.Queue() for _ in range(n)]


def test_inject_batches_round_robin():
    queues = make_queues()
    persister = Persister("test-replica", queues, buffer_capacity=5)
    for _ in range(7):
        persister.inject(oplog_bytes())
    persister.inject(None)
    persister.inject(oplog_bytes())
    persister.inject(None)
    persister.inject(None)
    persister.inject(None)
    persister.inject(oplog_bytes())
    persister.inject(None)

    assert len(queues[0].get_nowait()) == 5
    assert len(queues[1].get_nowait()) == 2
    assert len(queues[2].get_nowait()) == 1
    assert len(queues[3].get_nowait()) == 1
    assert all(q.empty() for q in queues)


def test_reader_debug_discard_drops_everything():
    queues = make_queues(1)
    persister = Persister("r", queues, buffer_capacity=1, reader_debug="discard")
    persister.inject(oplog_bytes())
    assert queues[0].empty()
    assert persister.buffer == []


def test_requires_pending_queue():
    with pytest.raises(ValueError):
        Persister("r", [])


def test_init_disk_queue_in_illegal_stage(tmp_path):
    persister = Persister("r", make_queues(), enable_disk_persist=True, log_directory=tmp_path)
    with pytest.raises(RuntimeError):
        persister.init_disk_queue("dq")


def test_init_disk_queue_twice(tmp_path):
    persister = Persister("r", make_queues(), enable_disk_persist=True, log_directory=tmp_path)
    persister.fetch_stage = FetchStage.STORE_DISK_NO_APPLY
    persister.init_disk_queue("dq")
    with pytest.raises(RuntimeError):
        persister.init_disk_queue("dq")


def test_inject_without_disk_queue_raises(tmp_path):
    persister = Persister("r", make_queues(), enable_disk_persist=True, log_directory=tmp_path)
    persister.fetch_stage = FetchStage.STORE_DISK_NO_APPLY
    with pytest.raises(RuntimeError):
        persister.inject(oplog_bytes())


def test_disk_persist_then_retrieve(tmp_path):
    queues = make_queues()
    persister = Persister("r", queues, buffer_capacity=5, enable_disk_persist=True,
                          log_directory=tmp_path, poll_interval=0.01)
    persister.fetch_stage = FetchStage.STORE_DISK_NO_APPLY
    persister.init_disk_queue("dq")
    docs = [oplog_bytes(i) for i in range(1, 4)]
    for doc in docs:
        persister.inject(doc)
    persister.inject(None)

    assert persister.status()["disk_write_count"] == 3
    assert all(q.empty() for q in queues)

    persister.fetch_stage = FetchStage.STORE_DISK_APPLY
    persister.retrieve()

    assert persister.fetch_stage is FetchStage.STORE_MEMORY_APPLY
    assert persister.disk_queue_last_ts == (5 << 32) | 3
    assert persister.status()["disk_read_count"] == 3
    assert list(tmp_path.iterdir()) == []

    persister.inject(None)
    assert queues[0].get_nowait() == docs


def test_retrieve_reads_in_batches(tmp_path):
    queues = make_queues()
    persister = Persister("r", queues, buffer_capacity=2, enable_disk_persist=True,
                          log_directory=tmp_path, disk_batch_count=2)
    persister.fetch_stage = FetchStage.STORE_DISK_APPLY
    persister.init_disk_queue("dq")
    for i in range(5):
        persister.inject(oplog_bytes(i))
    persister.retrieve()
    assert len(queues[0].get_nowait()) == 2
    assert len(queues[1].get_nowait()) == 2
    assert persister.buffer == [oplog_bytes(4)]
    persister.inject(None)
    assert queues[2].get_nowait() == [oplog_bytes(4)]


def test_retrieve_rejects_memory_stage_before_disk(tmp_path):
    persister = Persister("r", make_queues(), enable_disk_persist=True, log_directory=tmp_path)
    persister.fetch_stage = FetchStage.STORE_MEMORY_APPLY
    with pytest.raises(RuntimeError):
        persister.retrieve()


def test_query_ts_change_stream(tmp_path):
    persister = Persister("r", make_queues(), enable_disk_persist=True, log_directory=tmp_path,
                          fetch_method=FETCH_METHOD_CHANGE_STREAM)
    persister.fetch_stage = FetchStage.STORE_DISK_NO_APPLY
    persister.init_disk_queue("dq")
    assert persister.query_ts_from_disk_queue() == 0
    persister.inject(bson.encode({"operationType": "insert", "clusterTime": Timestamp(7, 2)}))
    assert persister.query_ts_from_disk_queue() == (7 << 32) | 2


def test_query_ts_rejects_bad_oplog(tmp_path):
    persister = Persister("r", make_queues(), enable_disk_persist=True, log_directory=tmp_path)
    persister.fetch_stage = FetchStage.STORE_DISK_NO_APPLY
    persister.init_disk_queue("dq")
    persister.inject(bson.encode({"op": "i"}))
    with pytest.raises(ValueError):
        persister.query_ts_from_disk_queue()


def test_query_ts_without_queue():
    persister = Persister("r", make_queues())
    with pytest.raises(RuntimeError):
        persister.query_ts_from_disk_queue()


def test_status_fields():
    persister = Persister("r", make_queues(), buffer_capacity=10)
    persister.inject(oplog_bytes())
    assert persister.status() == {
        "buffer_used": 1,
        "buffer_size": 10,
        "enable_disk_persist": False,
        "fetch_stage": FetchStage.STORE_UNKNOWN.value,
        "disk_write_count": 0,
        "disk_read_count": 0,
    }


def test_disk_queue_round_trip(tmp_path):
    dq = DiskQueue("q", tmp_path)
    assert dq.last_write() == b""
    dq.put(b"one")
    dq.put(b"two")
    assert dq.depth() == 2
    assert dq.last_write() == b"two"
    assert dq.read_all() == [b"one", b"two"]
    assert dq.depth() == 0
    dq.put(b"three")
    assert dq.read_all() == [b"three"]


def test_disk_queue_reopen_keeps_unread(tmp_path):
    dq = DiskQueue("q", tmp_path)
    dq.put(b"a")
    dq.put(b"b")
    assert dq._read(1) == [b"a"]
    reopened = DiskQueue("q", tmp_path)
    assert reopened.depth() == 1
    assert reopened.last_write() == b"b"
    assert reopened.read_all() == [b"b"]


def test_disk_queue_delete(tmp_path):
    dq = DiskQueue("q", tmp_path)
    dq.put(b"a")
    dq.delete()
    assert list(tmp_path.iterdir()) == []
    with pytest.raises(ValueError):
        dq.put(b"b")