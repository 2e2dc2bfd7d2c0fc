"""Tests for the merge engine: casting, redaction and member checks."""

import pytest

from achilles.base import AnalysisDefinition, Distribution
from achilles.errors import MergeIntegrityError
from achilles.merge import (
    RESULTS_DIST_SHAPE,
    RESULTS_SHAPE,
    MergeEngine,
    build_detail_shapes,
    cast_select,
    redaction_clause,
    union_sql,
)
from achilles.runner import run_achilles
from reporting.summary import fetch_analysis_results

from conftest import FIXED_ROWS_SQL

FIXED = AnalysisDefinition(9001, "Fixed rows", ("label", None, None, None, None))


def _fixed_run(connector, base_config, templates, write_template, **overrides):
    write_template("analyses/9001.sql", FIXED_ROWS_SQL)
    config = {**base_config, "run_heel": False, **overrides}
    result = run_achilles(connector, config=config, analyses=[FIXED], templates=templates)
    assert result.ok, result.failures
    session = connector.connect()
    try:
        rows = fetch_analysis_results(session, "main", analysis_id=9001)
    finally:
        session.close()
    return {r["stratum_1"]: r["count_value"] for r in rows}


class TestRedaction:
    def test_small_cells_dropped(self, connector, base_config, templates, write_template):
        rows = _fixed_run(connector, base_config, templates, write_template, small_cell_count=5)
        # 5 and 1 are at or below the threshold; unknown counts survive
        assert rows == {"six": 6, "unknown": None}

    def test_zero_keeps_every_positive_count(
        self, connector, base_config, templates, write_template
    ):
        rows = _fixed_run(connector, base_config, templates, write_template, small_cell_count=0)
        assert rows == {"five": 5, "six": 6, "unknown": None, "one": 1}

    def test_disabled(self, connector, base_config, templates, write_template):
        rows = _fixed_run(connector, base_config, templates, write_template, small_cell_count=None)
        assert set(rows) == {"five", "six", "unknown", "one"}

    def test_clause(self):
        assert redaction_clause("count_value", 5) == "WHERE count_value IS NULL OR count_value > 5"
        assert redaction_clause(None, 5) == ""
        assert redaction_clause("count_value", None) == ""


class TestShapes:
    ANALYSES = [
        AnalysisDefinition(1, "one"),
        AnalysisDefinition(103, "dist", distribution=Distribution.DISTRIBUTIONAL),
        AnalysisDefinition(2, "two"),
        AnalysisDefinition(7, "both", distribution=Distribution.BOTH),
    ]

    def test_members_sorted_by_shape(self, make_ctx):
        shapes = {s.shape_id: s for s in build_detail_shapes(make_ctx(), self.ANALYSES)}
        assert shapes[RESULTS_SHAPE].member_ids == [1, 2, 7]
        assert shapes[RESULTS_DIST_SHAPE].member_ids == [7, 103]
        assert shapes[RESULTS_DIST_SHAPE].table_name == "achilles_results_dist"

    def test_union_casts_every_field(self, make_ctx):
        ctx = make_ctx(scratch_database_schema="scratch", num_threads=2)
        shape = build_detail_shapes(ctx, self.ANALYSES)[0]
        sql = union_sql(ctx, shape)
        assert sql.count("UNION ALL") == 2
        assert "CAST(count_value AS bigint) AS count_value FROM scratch.tmpach_7" in sql
        assert "CAST(stratum_5 AS varchar(255)) AS stratum_5" in sql

    def test_empty_shape_is_typed_and_empty(self, make_ctx):
        shape = build_detail_shapes(make_ctx(), [AnalysisDefinition(1, "one")])[1]
        assert shape.member_ids == []
        assert union_sql(make_ctx(), shape) == cast_select(shape, None)
        assert cast_select(shape, None).endswith("WHERE 1 = 0")

    def test_empty_shape_creates_empty_table(self, cdm_connector, base_config):
        config = {**base_config, "analysis_ids": [1, 2], "run_heel": False}
        assert run_achilles(cdm_connector, config=config).ok
        session = cdm_connector.connect()
        try:
            assert session.table_exists("main.achilles_results_dist")
            assert fetch_analysis_results(session, "main", distribution=True) == []
        finally:
            session.close()


class TestIntegrity:
    def test_missing_member_raises(self, make_ctx, session):
        ctx = make_ctx(scratch_database_schema="main", num_threads=2)
        shape = build_detail_shapes(ctx, [AnalysisDefinition(42, "ghost")])[0]
        with pytest.raises(MergeIntegrityError) as excinfo:
            MergeEngine(ctx, templates=None).verify_members(session, shape)
        assert excinfo.value.analysis_id == 42
        assert excinfo.value.table == "main.tmpach_42"

    def test_missing_member_fails_the_run(
        self, connector, base_config, templates, write_template
    ):
        # the template runs, but writes to the wrong table
        write_template(
            "analyses/9002.sql",
            "SELECT 9002 AS analysis_id, 1 AS count_value "
            "INTO @scratchDatabaseSchema@schemaDelim@tempAchillesPrefix_elsewhere;",
        )
        result = run_achilles(
            connector,
            config={**base_config, "run_heel": False},
            analyses=[AnalysisDefinition(9002, "misplaced")],
            templates=templates,
        )
        assert result.status.value == "FAILED"
        assert [f.error_type for f in result.failures] == ["MergeIntegrityError"]
        assert result.failures[0].step_id == RESULTS_SHAPE
