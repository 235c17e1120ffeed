"""Choosing between full and incremental sync from checkpoints and oplog ranges."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence

from bson.timestamp import Timestamp

from mongoshake.filters import Namespace
from mongoshake.reader import FETCH_METHOD_CHANGE_STREAM, FETCH_METHOD_OPLOG, create_reader

_logger = logging.getLogger(__name__)

TUNNEL_DIRECT = "direct"
SPECIAL_SOURCE_ALIYUN_SERVERLESS = "aliyun_serverless"


class SyncMode(str, Enum):
    ALL = "all"
    FULL = "full"
    INCR = "incr"


@dataclass
class MongoSource:
    url: str
    replica_name: str = ""
    gids: list[str] = field(default_factory=list)


@dataclass
class Checkpoint:
    """A stored sync position of one replica set or mongos."""

    name: str
    timestamp: int
    oplog_disk_queue: str = ""


@dataclass
class TimestampNode:
    """The oldest and newest oplog timestamps of one replica set."""

    oldest: int
    newest: int


def _ts_to_int(value: Any) -> int:
    if isinstance(value, Timestamp):
        return (value.time << 32) | value.inc
    return int(value)


def _default_client(url: str) -> Any:
    import pymongo

    return pymongo.MongoClient(url)


def _fetch_all_timestamps(sources: Sequence[MongoSource]) -> dict[str, TimestampNode]:
    result: dict[str, TimestampNode] = {}
    for source in sources:
        client = _default_client(source.url)
        try:
            oplog = client["local"]["oplog.rs"]
            edges = []
            for direction in (1, -1):
                doc = next(iter(oplog.find({}, sort=[("$natural", direction)], limit=1)), None)
                if doc is None:
                    raise RuntimeError(f"source[{source.replica_name}] has an empty oplog")
                edges.append(_ts_to_int(doc["ts"]))
            result[source.replica_name] = TimestampNode(oldest=edges[0], newest=edges[1])
        finally:
            client.close()
    return result


class ReplicationCoordinator:
    """Decides which sync mode to run and where incremental sync starts."""

    def __init__(self, mongod: Sequence[MongoSource] = (), mongos: Optional[MongoSource] = None,
                 real_source_full_sync: Sequence[MongoSource] = (),
                 real_source_incr_sync: Sequence[MongoSource] = (), *,
                 checkpoints: Optional[Mapping[str, Checkpoint]] = None,
                 timestamp_fetcher: Optional[
                     Callable[[Sequence[MongoSource]], Mapping[str, TimestampNode]]] = None,
                 fetch_method: str = FETCH_METHOD_OPLOG,
                 checkpoint_start_position: int = 1,
                 tunnel: str = TUNNEL_DIRECT,
                 special_source_db_flag: str = "",
                 reader_factory: Callable[[str, str, str], Any] = create_reader) -> None:
        self.mongod = list(mongod)
        self.mongos = mongos
        self.real_source_full_sync = list(real_source_full_sync)
        self.real_source_incr_sync = list(real_source_incr_sync)
        self.checkpoints = checkpoints if checkpoints is not None else {}
        self.timestamp_fetcher = timestamp_fetcher or _fetch_all_timestamps
        self.fetch_method = fetch_method
        self.checkpoint_start_position = checkpoint_start_position
        self.tunnel = tunnel
        self.special_source_db_flag = special_source_db_flag
        self.reader_factory = reader_factory

    def _stored(self, name: str) -> Optional[Checkpoint]:
        """Return the checkpoint of name, or None if absent or empty."""
        checkpoint = self.checkpoints.get(name)
        if checkpoint is None or checkpoint.timestamp <= 1:
            return None
        return checkpoint

    def compare_checkpoint_and_db_ts(
            self, sync_mode_all: bool) -> tuple[int, Optional[dict[str, int]], bool]:
        """Return (smallest newest timestamp, start positions, can run incr directly)."""
        ts_map = dict(self.timestamp_fetcher(self.mongod))
        smallest_new = min((node.newest for node in ts_map.values()), default=0)
        _logger.info("all node timestamp map: %s", ts_map)

        start_ts_map: dict[str, int] = {}
        conf_ts = self.checkpoint_start_position << 32

        mongos_ckpt: Optional[Checkpoint] = None
        if self.mongos is not None and self.fetch_method == FETCH_METHOD_CHANGE_STREAM:
            mongos_ckpt = self._stored(self.mongos.replica_name)
            start_ts_map[self.mongos.replica_name] = (
                conf_ts if mongos_ckpt is None else mongos_ckpt.timestamp)

        for name, node in ts_map.items():
            remote = self._stored(name) if mongos_ckpt is None else mongos_ckpt
            if remote is None:
                if sync_mode_all or (conf_ts > 1 << 32 and node.oldest >= conf_ts):
                    _logger.info("%s syncModeAll[%s] oldest[%d] confTs[%d]",
                                 name, sync_mode_all, node.oldest, conf_ts)
                    return smallest_new, None, False
                start_ts_map[name] = conf_ts
            else:
                # a checkpoint older than the oplog is lost unless it was kept on disk
                if node.oldest >= remote.timestamp and remote.oplog_disk_queue == "":
                    _logger.info("%s oldest[%d] >= checkpoint[%d], need full sync",
                                 name, node.oldest, remote.timestamp)
                    return smallest_new, None, False
                start_ts_map[name] = remote.timestamp

        return smallest_new, start_ts_map, True

    def is_checkpoint_exist(self) -> tuple[bool, Any]:
        """Return (True, checkpoint ts) or (False, resume token of the current position)."""
        source = self.real_source_full_sync[0]
        checkpoint = self.checkpoints.get(source.replica_name)
        if checkpoint is None:
            reader = self.reader_factory(FETCH_METHOD_CHANGE_STREAM, source.url,
                                         source.replica_name)
            token = reader.fetch_newest_timestamp()
            _logger.info("change stream resume token: %s", token)
            return False, token
        return True, checkpoint.timestamp

    def select_sync_mode(
            self, sync_mode: str) -> tuple[str, Optional[dict[str, int]], Any]:
        """Return (mode to run, incr start positions, full sync begin position)."""
        if sync_mode not in (SyncMode.ALL, SyncMode.INCR):
            return sync_mode, None, 0
        mode = SyncMode(sync_mode)

        if self.special_source_db_flag == SPECIAL_SOURCE_ALIYUN_SERVERLESS:
            if mode is SyncMode.INCR:
                return mode, None, 0
            exists, token = self.is_checkpoint_exist()
            if not exists:
                return SyncMode.ALL, None, token
            return SyncMode.INCR, {self.real_source_incr_sync[0].replica_name: token}, token

        smallest_new, start_ts_map, can_incr = self.compare_checkpoint_and_db_ts(
            mode is SyncMode.ALL)
        if can_incr:
            _logger.info("sync mode run %s", SyncMode.INCR.value)
            return SyncMode.INCR, start_ts_map, 0
        if mode is SyncMode.INCR or self.tunnel != TUNNEL_DIRECT:
            raise RuntimeError("start time illegal, can't run incr sync")
        return SyncMode.ALL, None, smallest_new


def fetch_indexes(sources: Sequence[MongoSource], filter_func: Callable[[str], bool],
                  client_factory: Callable[[str], Any] = _default_client
                  ) -> dict[Namespace, list[dict[str, Any]]]:
    """Collect the indexes of every namespace not filtered out."""
    index_map: dict[Namespace, list[dict[str, Any]]] = {}
    for source in sources:
        _logger.info("source[%s] start fetching index", source.replica_name)
        client = client_factory(source.url)
        try:
            for database in client.list_database_names():
                for collection in client[database].list_collection_names():
                    ns = Namespace(database, collection)
                    if filter_func(str(ns)):
                        continue
                    index_map[ns] = [dict(index)
                                     for index in client[database][collection].list_indexes()]
        finally:
            client.close()
        _logger.info("source[%s] finish fetching index", source.replica_name)
    return index_map