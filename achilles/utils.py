"""Shared helpers: scratch-table naming and small SQL builders."""

from typing import Optional, Tuple

from achilles.base import TEMP_SCHEMA, ScratchTableHandle


def schema_delim(scratch_schema: str) -> str:
    """Return the delimiter placed between the scratch schema and a table name.

    Temp tables have no schema, so the "schema" collapses into a name prefix.
    """
    return "s_" if scratch_schema == TEMP_SCHEMA else "."


def table_prefix(prefix: str, shape: Optional[str] = None) -> str:
    return f"{prefix}_{shape}" if shape else prefix


def scratch_name(
    scratch_schema: str, prefix: str, item_id, shape: Optional[str] = None
) -> str:
    """Return the physical name of the scratch table for one step.

    The name is ``<schema><delim><prefix>[_<shape>]_<item_id>``; this is the
    only place scratch names are built, and templates reproduce it via the
    ``@scratchDatabaseSchema@schemaDelim@<prefix>_@<id>`` placeholders.
    """
    return (
        f"{scratch_schema}{schema_delim(scratch_schema)}"
        f"{table_prefix(prefix, shape)}_{item_id}"
    )


def scratch_handle(
    scratch_schema: str,
    prefix: str,
    item_id,
    shape: Optional[str] = None,
    owner: Optional[str] = None,
) -> ScratchTableHandle:
    return ScratchTableHandle(
        logical_name=f"{table_prefix(prefix, shape)}_{item_id}",
        physical_name=scratch_name(scratch_schema, prefix, item_id, shape),
        schema_qualifier=scratch_schema,
        session_owner=owner,
    )


def split_qualified(name: str) -> Tuple[Optional[str], str]:
    """Split ``schema.table`` (schema may itself be dotted) into its parts."""
    if "." not in name:
        return None, name
    schema, _, table = name.rpartition(".")
    return schema, table


def drop_table_sql(name: str) -> str:
    """Return a dialect-neutral drop statement for *name* (temp names allowed)."""
    return f"DROP TABLE IF EXISTS {name};"


def quote_literal(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"
