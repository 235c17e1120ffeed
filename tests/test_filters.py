import pytest

from mongoshake import filters
from mongoshake.filters import (
    AutologousFilter,
    DDLFilter,
    DocFilterChain,
    GidFilter,
    MigrateFilter,
    Namespace,
    NamespaceFilter,
    NoopFilter,
    OplogEntry,
    OplogFilterChain,
    convert_to_rule,
    init_ns,
    new_doc_filter_list,
)


@pytest.fixture(autouse=True)
def restore_ignore_rules():
    saved = dict(filters.NS_SHOULD_BE_IGNORE)
    yield
    filters.NS_SHOULD_BE_IGNORE.clear()
    filters.NS_SHOULD_BE_IGNORE.update(saved)


def _apply_ops(second_ns):
    return OplogEntry(
        namespace="admin.$cmd",
        operation="c",
        object={
            "applyOps": [
                {"op": "i", "ns": "zz.mmm", "o": {"a": 1, "_id": "xxx"}},
                {"op": "i", "ns": second_ns, "o": {"xyz": "ff", "_id": "yyy"}},
            ]
        },
    )


def test_namespace_parse():
    ns = Namespace.parse("db.coll.sub")
    assert ns == Namespace("db", "coll.sub")
    assert str(ns) == "db.coll.sub"


def test_convert_to_rule():
    assert convert_to_rule(["db1", "db2.collection2"]) == (
        "^(db1|db2\\.collection2)$|^(db1\\.|db2\\.collection2\\.).*$"
    )
    assert convert_to_rule([]) == ""
    assert convert_to_rule(None) == ""


def test_namespace_filter_white_db_cmd():
    f = NamespaceFilter(["gogo.test1", "gogo.test2"], None)
    assert f.filter(OplogEntry(namespace="gogo.$cmd")) is False


def test_namespace_filter_empty_rules():
    f = NamespaceFilter(None, None)
    assert f.filter(OplogEntry(namespace="zz.mm", operation="i")) is False


def test_namespace_filter_black():
    f = NamespaceFilter(None, ["zz", "cc.x"])
    assert f.filter(OplogEntry(namespace="zz.mm", operation="i")) is True
    assert f.filter(OplogEntry(namespace="cc.$cmd", operation="i")) is False
    assert f.filter(OplogEntry(namespace="cc.x", operation="i")) is True
    assert f.filter(OplogEntry(namespace="cc.y", operation="i")) is False


def test_namespace_filter_command_without_name():
    f = NamespaceFilter(None, None)
    assert f.filter(OplogEntry(namespace="admin.$cmd", operation="c")) is False


def test_namespace_filter_apply_ops_all_kept():
    f = NamespaceFilter(None, None)
    log = _apply_ops("zz.x")
    assert f.filter(log) is False
    assert len(log.object["applyOps"]) == 2


def test_namespace_filter_apply_ops_partial():
    f = NamespaceFilter(None, ["ff"])
    log = _apply_ops("ff.x")
    assert f.filter(log) is False
    assert len(log.object["applyOps"]) == 1
    assert log.object["applyOps"][0]["ns"] == "zz.mmm"


def test_namespace_filter_apply_ops_all_removed():
    f = NamespaceFilter(None, ["zz"])
    log = _apply_ops("zz.x")
    assert f.filter(log) is True
    assert log.object["applyOps"] == []


def test_namespace_filter_collection_command_rewrites_namespace():
    f = NamespaceFilter(None, ["zz"])
    log = OplogEntry(namespace="zz.$cmd", operation="c", object={"create": "abc"})
    assert f.filter(log) is True
    assert log.namespace == "zz.abc"


def test_namespace_filter_rename_collection():
    f = NamespaceFilter(["my"], None)
    log = OplogEntry(namespace="other.$cmd", operation="c",
                     object={"renameCollection": "my.tbl", "to": "my.my"})
    assert f.filter(log) is False
    assert log.namespace == "my.tbl"


def test_namespace_filter_illegal_collection_command():
    f = NamespaceFilter(None, ["zz"])
    log = OplogEntry(namespace="zz.$cmd", operation="c", object={"drop": 5})
    assert f.filter(log) is False


def test_namespace_filter_system_indexes_uses_object_ns():
    f = NamespaceFilter(None, ["my.tbl"])
    log = OplogEntry(namespace="my.system.indexes", operation="i",
                     object={"ns": "my.tbl", "name": "date_1"})
    assert f.filter(log) is True
    assert log.namespace == "my.system.indexes"


def test_gid_filter_empty():
    f = GidFilter([])
    assert f.filter(OplogEntry(gid="1")) is False
    assert f.filter(OplogEntry()) is False


def test_gid_filter_listed():
    f = GidFilter(["5", "6", "7"])
    assert f.filter(OplogEntry(gid="1")) is True
    assert f.filter(OplogEntry()) is True
    assert f.filter(OplogEntry(gid="5")) is False
    assert f.filter(OplogEntry(gid="8")) is True


def test_autologous_filter_default():
    f = AutologousFilter()
    assert f.filter(OplogEntry(namespace="a.b")) is False
    assert f.filter(OplogEntry()) is False
    assert f.filter(OplogEntry(namespace="mongoshake.x")) is True
    assert f.filter(OplogEntry(namespace="local.x.z.y")) is True
    assert f.filter(OplogEntry(namespace="a.system.views")) is True
    assert f.filter(OplogEntry(namespace="a.system.view")) is False
    assert f.filter(OplogEntry(namespace="admin.x")) is True


def test_autologous_filter_after_init_ns():
    init_ns(["admin", "system.views"])
    f = AutologousFilter()
    assert f.filter(OplogEntry(namespace="a.b")) is False
    assert f.filter(OplogEntry()) is False
    assert f.filter(OplogEntry(namespace="mongoshake.x")) is True
    assert f.filter(OplogEntry(namespace="local.x.z.y")) is True
    assert f.filter(OplogEntry(namespace="a.system.views")) is False
    assert f.filter(OplogEntry(namespace="a.system.view")) is False
    assert f.filter(OplogEntry(namespace="admin.x")) is False


def test_autologous_filter_transaction():
    init_ns([])
    f = AutologousFilter()
    assert f.filter(OplogEntry(namespace="admin.$cmd", operation="c")) is False
    assert f.filter(OplogEntry(namespace="admin.xx", operation="c")) is True
    assert f.filter(OplogEntry(namespace="adminx", operation="d")) is False


def test_simple_filters():
    assert NoopFilter().filter(OplogEntry(operation="n")) is True
    assert NoopFilter().filter(OplogEntry(operation="i")) is False
    assert DDLFilter().filter(OplogEntry(operation="c")) is True
    assert DDLFilter().filter(OplogEntry(namespace="a.system.indexes", operation="i")) is True
    assert DDLFilter().filter(OplogEntry(namespace="a.b", operation="u")) is False
    assert MigrateFilter().filter(OplogEntry(from_migrate=True)) is True
    assert MigrateFilter().filter(OplogEntry()) is False


def test_oplog_filter_chain():
    chain = OplogFilterChain([NoopFilter(), GidFilter(["5"])])
    assert chain.iterate_filter(OplogEntry(operation="n", gid="5")) is True
    assert chain.iterate_filter(OplogEntry(operation="i", gid="6")) is True
    assert chain.iterate_filter(OplogEntry(operation="i", gid="5")) is False


def test_new_doc_filter_list():
    chain = new_doc_filter_list(None, None)
    assert isinstance(chain, DocFilterChain)
    assert len(chain) == 1
    assert chain.iterate_filter("local.x") is True
    assert chain.iterate_filter("db.x") is False

    chain = new_doc_filter_list(["db.keep"], None)
    assert len(chain) == 2
    assert chain.iterate_filter("db.keep") is False
    assert chain.iterate_filter("db.other") is True
    assert chain.iterate_filter("db.$cmd") is False