# mongoshake

Building blocks for copying data from one MongoDB deployment to another:
deciding what to skip, reading the oplog or a change stream, batching what
was read, choosing between a full and an incremental sync, and reading and
writing collection documents during a full sync.

## Installation

```
pip install .
```

Run the tests with:

```
pip install ".[test]"
pytest
```

## Modules

- `mongoshake.filters`
  - `Namespace` is a database/collection pair; `Namespace.parse("db.coll")`
    splits at the first dot. `OplogEntry` holds the oplog fields the filters
    look at.
  - `AutologousFilter` skips the internal namespaces: `admin.`, `local.`,
    `config.`, `mongoshake.`, `mongoshake_conflict.` and anything containing
    `system.views`. `admin.$cmd` is always kept. `init_ns(names)` removes
    entries from that ignore list.
  - `NamespaceFilter(white, black)` applies white and black lists built by
    `convert_to_rule`. For command entries it filters on the collection the
    command names, follows `renameCollection`, and drops filtered operations
    from an `applyOps` list in place.
  - `GidFilter`, `NoopFilter`, `DDLFilter` and `MigrateFilter` cover gids,
    no-ops, DDL and migration entries.
  - `DocFilterChain` and `OplogFilterChain` skip an item if any of their
    filters does. `new_doc_filter_list(white, black)` builds the chain a full
    sync uses.
- `mongoshake.orphan`: `OrphanFilter(replset, chunk_map)` tells whether a
  document lies outside every chunk (`ChunkRange`, `ShardCollection`) of its
  namespace, for ranged and hashed (`ShardType`) shard keys. `compute_hash`
  is the md5-based hash of hashed sharding for strings, numbers and
  `ObjectId`s; `chunk_lt`, `chunk_gt` and `chunk_equal` compare bounds
  including `MinKey` and `MaxKey`.
- `mongoshake.metric`: `CollectionMetric` with a `Status`; `str()` gives `-`
  before the start, otherwise a percentage and the counts, e.g.
  `50.00% (1/2)`.
- `mongoshake.reader`: `OplogReader`, `GidOplogReader` and `EventReader` fetch
  in a background thread after `start_fetcher()`; `next()` returns raw BSON
  and raises `ReaderTimeout` when nothing arrives in time, or
  `CollectionCappedError` when the oplog rolled past the read position.
  `create_reader(fetch_method, src, replset)` picks one for `"oplog"` or
  `"change_stream"`.
- `mongoshake.persister`: `Persister` groups raw entries into batches of
  `buffer_capacity` and puts them round-robin on a list of `queue.Queue`s;
  `inject(None)` flushes. With disk persist on, entries go to a file-backed
  `DiskQueue` while the `FetchStage` says so, and `retrieve()` drains it back
  before switching to memory. `status()` returns the counters as a dict.
- `mongoshake.sync_mode`: `ReplicationCoordinator.select_sync_mode(mode)`
  compares checkpoints (`Checkpoint`) with each source's oplog range
  (`TimestampNode`) and returns the `SyncMode` to run, the incremental start
  positions and the full-sync begin position. `fetch_indexes` collects the
  indexes of every namespace not filtered out.
- `mongoshake.doc_reader`: `DocumentSplitter` splits a collection into `_id`
  ranges of at most `piece_size` documents and yields a `DocumentReader` for
  each; `build_range_query(start, end)` builds the `_id` range query.
- `mongoshake.doc_executor`: `CollectionExecutor` writes batches to a target
  collection with several `DocExecutor` threads. On a duplicate key it retries
  one document at a time, skipping orphans or replacing the existing document
  when asked to, and otherwise raises `DocSyncError`.

## Example

```python
from mongoshake.filters import NamespaceFilter, OplogEntry

ns_filter = NamespaceFilter(white=[], black=["zz", "cc.x"])
ns_filter.filter(OplogEntry(namespace="zz.mm", operation="i"))  # True: skipped
ns_filter.filter(OplogEntry(namespace="cc.y", operation="i"))   # False: kept
```

## What it does not do

- There is no command and no long-running service: nothing here starts a
  replication on its own or serves a status API.
- Nothing drives a whole full sync: the splitter, readers and executors are
  there, but running them across all collections, dropping target
  collections, enabling sharding on the target and creating indexes there are
  left to the caller.
- Checkpoints are not stored anywhere; `ReplicationCoordinator` takes them as
  a mapping.