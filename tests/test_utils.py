"""Tests for scratch-table naming."""

import itertools

from achilles.utils import drop_table_sql, schema_delim, scratch_handle, scratch_name, split_qualified


def test_schema_delim():
    assert schema_delim("#") == "s_"
    assert schema_delim("scratch") == "."


def test_scratch_name_forms():
    assert scratch_name("scratch", "tmpach", 101) == "scratch.tmpach_101"
    assert scratch_name("scratch", "tmpach", 103, "dist") == "scratch.tmpach_dist_103"
    assert scratch_name("#", "tmpheel", "rule_1") == "#s_tmpheel_rule_1"


def test_scratch_names_do_not_collide():
    """Distinct steps, shapes and prefixes never share a physical table."""
    ids = [1, 2, 101, 103, 1801, 2000]
    names = [
        scratch_name("scratch", prefix, i, shape)
        for prefix, i, shape in itertools.product(["tmpach", "tmpheel"], ids, [None, "dist"])
    ]
    assert len(names) == len(set(names))


def test_scratch_handle():
    handle = scratch_handle("#", "tmpach", 5, owner="session-1")
    assert handle.logical_name == "tmpach_5"
    assert handle.physical_name == "#s_tmpach_5"
    assert handle.is_temporary
    assert handle.session_owner == "session-1"
    assert not scratch_handle("scratch", "tmpach", 5).is_temporary


def test_split_qualified():
    assert split_qualified("t") == (None, "t")
    assert split_qualified("main.t") == ("main", "t")
    assert split_qualified("cat.db.t") == ("cat.db", "t")


def test_drop_table_sql():
    assert drop_table_sql("#t") == "DROP TABLE IF EXISTS #t;"
    assert drop_table_sql("s.t") == "DROP TABLE IF EXISTS s.t;"
