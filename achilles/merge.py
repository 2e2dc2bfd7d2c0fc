"""Materialization of scratch tables into the permanent result tables.

Each detail shape unions its members' scratch tables, casts every field to
the shape's declared type and, for count-bearing shapes, drops rows whose
count is at or below the small cell threshold.
"""

from typing import List, Optional, Sequence

from achilles.base import (
    DIST_SHAPE_SUFFIX,
    RESULTS_DIST_SCHEMA,
    RESULTS_SCHEMA,
    AnalysisDefinition,
    DetailTableShape,
)
from achilles.context import RunContext
from achilles.errors import MergeIntegrityError
from achilles.session import Session
from achilles.sqlrender import TemplateStore
from achilles.utils import scratch_name, table_prefix

RESULTS_SHAPE = "results"
RESULTS_DIST_SHAPE = "results_dist"


def build_detail_shapes(
    ctx: RunContext, analyses: Sequence[AnalysisDefinition]
) -> List[DetailTableShape]:
    """Return the two analysis shapes with their members in ascending ID order."""
    prefix = ctx.settings.temp_achilles_prefix
    ids = sorted(a.analysis_id for a in analyses)
    by_id = {a.analysis_id: a for a in analyses}
    return [
        DetailTableShape(
            shape_id=RESULTS_SHAPE,
            table_name="achilles_results",
            schema=RESULTS_SCHEMA,
            table_prefix=table_prefix(prefix),
            member_ids=[i for i in ids if by_id[i].is_plain],
        ),
        DetailTableShape(
            shape_id=RESULTS_DIST_SHAPE,
            table_name="achilles_results_dist",
            schema=RESULTS_DIST_SCHEMA,
            table_prefix=table_prefix(prefix, DIST_SHAPE_SUFFIX),
            member_ids=[i for i in ids if by_id[i].is_distributional],
        ),
    ]


# ---------------------------------------------------------------------------
# SQL builders
# ---------------------------------------------------------------------------


def member_table(ctx: RunContext, shape: DetailTableShape, member_id) -> str:
    return scratch_name(ctx.settings.scratch_database_schema, shape.table_prefix, member_id)


def cast_select(shape: DetailTableShape, source: Optional[str]) -> str:
    """``SELECT CAST(f AS t) AS f, ...`` from *source*; an empty typed row set if None."""
    if source is None:
        casts = ", ".join(f"CAST(NULL AS {t}) AS {f}" for f, t in shape.fields)
        return f"SELECT {casts} WHERE 1 = 0"
    casts = ", ".join(f"CAST({f} AS {t}) AS {f}" for f, t in shape.fields)
    return f"SELECT {casts} FROM {source}"


def union_sql(ctx: RunContext, shape: DetailTableShape) -> str:
    if not shape.member_ids:
        return cast_select(shape, None)
    return "\nUNION ALL\n".join(
        cast_select(shape, member_table(ctx, shape, m)) for m in shape.member_ids
    )


def redaction_clause(count_field: Optional[str], small_cell_count: Optional[int]) -> str:
    """Keep rows whose count is unknown or strictly above the threshold."""
    if count_field is None or small_cell_count is None:
        return ""
    return f"WHERE {count_field} IS NULL OR {count_field} > {int(small_cell_count)}"


class MergeEngine:
    def __init__(self, ctx: RunContext, templates: TemplateStore):
        self.ctx = ctx
        self.templates = templates

    def verify_members(self, session: Session, shape: DetailTableShape) -> None:
        """Raise ``MergeIntegrityError`` for the first member with no scratch table."""
        for member in shape.member_ids:
            name = member_table(self.ctx, shape, member)
            if not session.table_exists(name):
                raise MergeIntegrityError(shape.shape_id, member, name)

    def merge(
        self,
        session: Session,
        shape: DetailTableShape,
        redact: bool = True,
        create: bool = True,
    ) -> None:
        """Materialize *shape* into its result table.

        With ``create`` the table is dropped and rebuilt; otherwise the rows
        are appended to the existing table.
        """
        settings = self.ctx.settings
        self.ctx.begin_file(f"merge_{shape.shape_id}.sql")
        self.verify_members(session, shape)
        where = redaction_clause(shape.count_field, settings.small_cell_count) if redact else ""
        if create:
            template = "analyses/merge_achilles_tables.sql"
        else:
            template = "analyses/append_achilles_tables.sql"
        self.ctx.log(
            f"  MERGE {shape.shape_id}: {len(shape.member_ids)} member(s) -> "
            f"{settings.results_database_schema}.{shape.table_name}"
        )
        sql = self.templates.render_translate(
            template,
            settings.dialect,
            resultsDatabaseSchema=settings.results_database_schema,
            tableName=shape.table_name,
            fieldNames=", ".join(f for f, _ in shape.fields),
            detailSqls=union_sql(self.ctx, shape),
            whereClause=where,
        )
        session.execute(sql)

    def append_from(self, session: Session, shape: DetailTableShape, source: str) -> None:
        """Append one scratch table's rows into *shape*'s result table, cast but unredacted."""
        settings = self.ctx.settings
        sql = self.templates.render_translate(
            "analyses/append_achilles_tables.sql",
            settings.dialect,
            resultsDatabaseSchema=settings.results_database_schema,
            tableName=shape.table_name,
            fieldNames=", ".join(f for f, _ in shape.fields),
            detailSqls=cast_select(shape, source),
            whereClause="",
        )
        session.execute(sql)

    def create_indices(self, session: Session) -> None:
        settings = self.ctx.settings
        if not settings.indices_supported:
            return
        self.ctx.log("  INDEX result tables")
        session.execute(
            self.templates.render_translate(
                "analyses/create_indices.sql",
                settings.dialect,
                resultsDatabaseSchema=settings.results_database_schema,
            )
        )
