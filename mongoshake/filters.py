"""Namespace and oplog filters that decide which operations are skipped."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

_logger = logging.getLogger(__name__)

APP_DATABASE = "mongoshake"
APP_CONFLICT_DATABASE = "mongoshake_conflict"

# key: namespace fragment, value: True means prefix match, False means "contains"
NS_SHOULD_BE_IGNORE: dict[str, bool] = {
    "admin.": True,
    "local.": True,
    "config.": True,
    APP_DATABASE + ".": True,
    APP_CONFLICT_DATABASE + ".": True,
    "system.views": False,
}

# takes priority over NS_SHOULD_BE_IGNORE
NS_SHOULD_NOT_BE_IGNORE: dict[str, bool] = {
    "admin.$cmd": True,
}

_COLLECTION_COMMANDS = frozenset(
    {
        "create",
        "createIndexes",
        "collMod",
        "drop",
        "deleteIndex",
        "deleteIndexes",
        "dropIndex",
        "dropIndexes",
        "convertToCapped",
        "emptycapped",
    }
)


@dataclass(frozen=True)
class Namespace:
    """A database and collection pair."""

    database: str
    collection: str

    @classmethod
    def parse(cls, text: str) -> "Namespace":
        database, _, collection = text.partition(".")
        return cls(database, collection)

    def __str__(self) -> str:
        return f"{self.database}.{self.collection}"


@dataclass
class OplogEntry:
    """The fields of an oplog entry that the filters look at."""

    namespace: str = ""
    operation: str = ""
    object: dict[str, Any] = field(default_factory=dict)
    gid: str = ""
    from_migrate: bool = False
    timestamp: int = 0


def init_ns(special_ns_list: Iterable[str]) -> None:
    """Stop ignoring the given namespaces (with or without a trailing dot)."""
    for ns in special_ns_list:
        NS_SHOULD_BE_IGNORE.pop(ns, None)
        NS_SHOULD_BE_IGNORE.pop(f"{ns}.", None)


def convert_to_rule(names: Optional[Iterable[str]]) -> str:
    """Build a regular expression matching the names or anything beneath them."""
    names = list(names or [])
    if not names:
        return ""
    exact = "|".join(names).replace(".", "\\.")
    nested = "|".join(f"{name}." for name in names).replace(".", "\\.")
    return f"^({exact})$|^({nested}).*$"


def _white_databases(names: Iterable[str]) -> frozenset[str]:
    return frozenset(name.split(".", 1)[0] for name in names)


def _matches_any(rules: dict[str, bool], namespace: str) -> bool:
    return any(
        namespace.startswith(key) if is_prefix else key in namespace
        for key, is_prefix in rules.items()
    )


def _command_name(command: dict[str, Any]) -> Optional[str]:
    return next(iter(command), None)


def _entry_from_op(op: dict[str, Any]) -> OplogEntry:
    # the inner "o" field is deliberately left out
    return OplogEntry(
        namespace=op.get("ns", ""),
        operation=op.get("op", ""),
        gid=op.get("g", ""),
        from_migrate=bool(op.get("fromMigrate", False)),
        timestamp=op.get("ts", 0),
    )


class AutologousFilter:
    """Skips internal namespaces such as admin, local, config and our own."""

    def filter_ns(self, namespace: str) -> bool:
        if _matches_any(NS_SHOULD_NOT_BE_IGNORE, namespace):
            return False
        return _matches_any(NS_SHOULD_BE_IGNORE, namespace)

    def filter(self, log: OplogEntry) -> bool:
        return self.filter_ns(log.namespace)


class NamespaceFilter:
    """Filters namespaces by a white list and a black list."""

    def __init__(self, white: Optional[Iterable[str]] = None,
                 black: Optional[Iterable[str]] = None) -> None:
        white = list(white or [])
        black = list(black or [])
        white_rule = convert_to_rule(white)
        black_rule = convert_to_rule(black)
        self._white = re.compile(white_rule) if white_rule else None
        self._black = re.compile(black_rule) if black_rule else None
        self._white_databases = _white_databases(white)

    def filter_ns(self, namespace: str) -> bool:
        # a white-listed db.col keeps the db.$cmd commands of that database
        if namespace.endswith(".$cmd"):
            if namespace.split(".", 1)[0] in self._white_databases:
                return False
        if self._white is not None and not self._white.search(namespace):
            return True
        if self._black is not None and self._black.search(namespace):
            return True
        return False

    def filter(self, log: OplogEntry) -> bool:
        db = log.namespace.split(".", 1)[0]
        if log.operation != "c":
            if log.namespace.endswith("system.indexes"):
                # index creation: filter by the namespace the index belongs to
                return self.filter_ns(log.object["ns"])
            return self.filter_ns(log.namespace)

        _logger.info("NamespaceFilter check %s", log.object)
        operation = _command_name(log.object)
        if operation is None:
            _logger.warning("command oplog without a command name, ignore")
            return False

        if operation in _COLLECTION_COMMANDS:
            collection = log.object.get(operation)
            if not isinstance(collection, str):
                _logger.warning("illegal %s oplog %s, ignore", operation, log.object)
                return False
            log.namespace = f"{db}.{collection}"
            return self.filter_ns(log.namespace)

        if operation == "renameCollection":
            ns = log.object.get(operation)
            if not isinstance(ns, str):
                _logger.warning("illegal %s oplog %s, ignore", operation, log.object)
                return False
            log.namespace = ns
            return self.filter_ns(log.namespace)

        if operation == "applyOps":
            ops = log.object.get("applyOps")
            if not isinstance(ops, list):
                ops = []
            remaining = [op for op in ops if not self.filter(_entry_from_op(op))]
            log.object["applyOps"] = remaining
            _logger.info("NamespaceFilter applyOps filter?[%s], remainOps: %s",
                         not remaining, remaining)
            return not remaining

        # e.g. dropDatabase
        return self.filter_ns(log.namespace)


class GidFilter:
    """Passes only entries whose gid is listed; passes everything if none listed."""

    def __init__(self, gids: Iterable[str]) -> None:
        self._gids = frozenset(gids)

    def filter(self, log: OplogEntry) -> bool:
        if not self._gids:
            return False
        return log.gid not in self._gids


class NoopFilter:
    """Skips no-op entries."""

    def filter(self, log: OplogEntry) -> bool:
        return log.operation == "n"


class DDLFilter:
    """Skips commands and index creation."""

    def filter(self, log: OplogEntry) -> bool:
        return log.operation == "c" or log.namespace.endswith("system.indexes")


class MigrateFilter:
    """Skips entries produced by chunk migration."""

    def filter(self, log: OplogEntry) -> bool:
        return log.from_migrate


class DocFilterChain(list):
    """Namespace filters; a namespace is skipped if any filter skips it."""

    def iterate_filter(self, namespace: str) -> bool:
        return any(f.filter_ns(namespace) for f in self)


class OplogFilterChain(list):
    """Oplog filters; an entry is skipped if any filter skips it."""

    def iterate_filter(self, log: OplogEntry) -> bool:
        return any(f.filter(log) for f in self)


def new_doc_filter_list(white: Optional[Iterable[str]] = None,
                        black: Optional[Iterable[str]] = None) -> DocFilterChain:
    """Build the document filter chain used by full sync."""
    white = list(white or [])
    black = list(black or [])
    chain = DocFilterChain([AutologousFilter()])
    if white or black:
        chain.append(NamespaceFilter(white, black))
    return chain