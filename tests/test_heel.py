"""Tests for the two-phase heel engine."""

import re

import pytest

from achilles.base import HeelRuleDefinition, RuleKind, Severity
from achilles.catalog import load_heel_rules
from achilles.context import RunState
from achilles.heel import (
    DERIVED_SHAPE,
    HEEL_RESULTS_SHAPE,
    build_heel_shapes,
    heel_scratch_tables,
    rule_scratch_table,
)
from achilles.runner import run_achilles
from reporting.summary import fetch_derived_results, fetch_heel_results

READS_UNMAPPED_SHARE = """
SELECT
  CAST(NULL AS INT) AS analysis_id,
  CAST('NOTIFICATION: unmapped share visible to later rules' AS VARCHAR(255)) AS achilles_heel_warning,
  31 AS rule_id,
  CAST(COUNT_BIG(*) AS BIGINT) AS record_count
INTO @scratchDatabaseSchema@schemaDelim@tempHeelPrefix_serial_hr_@heelName
FROM @resultsDatabaseSchema.achilles_results_derived
WHERE measure_id = 'UnmappedData:byDomain:Percentage'
GROUP BY measure_id;
"""


def _read(connector, reader):
    session = connector.connect()
    try:
        return reader(session, "main")
    finally:
        session.close()


def _by_rule(rows):
    grouped = {}
    for row in rows:
        grouped.setdefault(row["rule_id"], []).append(row)
    return grouped


class TestShapes:
    def test_phase_a_shapes(self, make_ctx):
        shapes = {s.shape_id: s for s in build_heel_shapes(make_ctx(), load_heel_rules())}
        assert shapes[DERIVED_SHAPE].member_ids == ["derived_row_counts", "derived_population"]
        assert shapes[HEEL_RESULTS_SHAPE].member_ids == [
            "rule_1", "rule_2", "rule_3", "rule_4", "rule_5",
        ]
        assert shapes[HEEL_RESULTS_SHAPE].count_field is None

    def test_dependent_rules_have_their_own_tables(self, make_ctx):
        ctx = make_ctx(scratch_database_schema="scratch", num_threads=2)
        rules = {r.name: r for r in load_heel_rules()}
        assert heel_scratch_tables(ctx, rules["rule_27"]) == [
            "scratch.tmpheel_serial_hr_rule_27",
            "scratch.tmpheel_serial_rd_rule_27",
        ]
        assert heel_scratch_tables(ctx, rules["rule_1"]) == ["scratch.tmpheel_rule_1"]


class TestSyntheticCdm:
    def test_expected_rules_fire(self, cdm_connector, base_config):
        result = run_achilles(cdm_connector, config=base_config)
        assert result.ok, result.failures

        fired = _by_rule(_read(cdm_connector, fetch_heel_results))
        assert set(fired) == {1, 2, 3, 4, 27, 28, 29, 30}
        assert fired[1][0]["achilles_heel_warning"].startswith("ERROR: 2-")
        assert fired[1][0]["record_count"] == 1
        assert fired[3][0]["record_count"] == 1
        assert fired[28][0]["achilles_heel_warning"].startswith("WARNING:")
        assert "(max age: 135)" in fired[28][0]["achilles_heel_warning"]
        assert [r["achilles_heel_warning"] for r in fired[27]] == [
            "NOTIFICATION: Unmapped data over percentage threshold in: Condition"
        ]

    def test_derived_measures(self, cdm_connector, base_config):
        assert run_achilles(cdm_connector, config=base_config).ok
        derived = {
            (r["measure_id"], r["stratum_1"]): r["statistic_value"]
            for r in _read(cdm_connector, fetch_derived_results)
        }
        assert derived[("ach_401:GlobalRowCnt", None)] == 18
        assert derived[("UnmappedData:ach_401:GlobalRowCnt", None)] == 6
        assert derived[("ach_101:MaxAge", None)] == 135
        assert derived[("ach_201:OutpatientFraction", None)] == pytest.approx(0.8)
        assert derived[("ach_2000:Percentage", None)] == pytest.approx(100 * 2 / 12)
        # appended by rule 27 during the dependent phase
        assert derived[("UnmappedData:byDomain:Percentage", "Condition")] == pytest.approx(
            100 * 6 / 18
        )

    def test_thresholds_change_outcomes(self, cdm_connector, base_config):
        config = {
            **base_config,
            "thresholds": {"age_warning": 200, "outpatient_visit_perc": 0.9},
        }
        assert run_achilles(cdm_connector, config=config).ok
        fired = _by_rule(_read(cdm_connector, fetch_heel_results))
        assert 28 not in fired
        assert 29 not in fired

    def test_non_general_population_skips_rules(self, cdm_connector, base_config):
        result = run_achilles(cdm_connector, config={**base_config, "general_population": False})
        assert result.ok
        assert "rule_5" not in result.rule_names
        assert "rule_30" not in result.rule_names
        assert 30 not in _by_rule(_read(cdm_connector, fetch_heel_results))


class TestDependentPhase:
    def test_later_rules_see_earlier_derived_output(
        self, cdm_connector, base_config, templates, write_template
    ):
        write_template("heels/dependents/rule_31.sql", READS_UNMAPPED_SHARE)
        rules = load_heel_rules() + [
            HeelRuleDefinition(31, "rule_31", RuleKind.DEPENDENT, severity=Severity.NOTIFICATION)
        ]
        result = run_achilles(cdm_connector, config=base_config, rules=rules, templates=templates)
        assert result.ok, result.failures
        fired = _by_rule(_read(cdm_connector, fetch_heel_results))
        assert fired[31][0]["record_count"] == 1

    def test_dependent_statements_never_touch_phase_a_scratch(
        self, cdm_connector, base_config, make_ctx
    ):
        seen = []
        config = {**base_config, "scratch_database_schema": "main", "num_threads": 2}
        result = run_achilles(
            cdm_connector, config=config, listeners=[lambda sid, stmt: seen.append((sid, stmt))]
        )
        assert result.ok, result.failures

        ctx = make_ctx(scratch_database_schema="main", num_threads=2)
        phase_a = [
            rule_scratch_table(ctx, r)
            for r in load_heel_rules()
            if r.kind is not RuleKind.DEPENDENT
        ]
        dependent = [(sid, s) for sid, s in seen if "tmpheel_serial_" in s]
        assert dependent
        for _, stmt in dependent:
            for name in phase_a:
                assert not re.search(rf"\b{re.escape(name)}\b", stmt), (name, stmt)
        # one session runs the whole dependent phase
        assert len({sid for sid, _ in dependent}) == 1

    def test_failed_dependent_rule_does_not_stop_the_others(
        self, cdm_connector, base_config, templates, write_template
    ):
        write_template(
            "heels/dependents/rule_28.sql",
            "SELECT x INTO @scratchDatabaseSchema@schemaDelim@tempHeelPrefix_serial_hr_@heelName "
            "FROM @resultsDatabaseSchema.no_such_table;",
        )
        result = run_achilles(cdm_connector, config=base_config, templates=templates)
        assert result.status is RunState.FAILED
        assert [(f.step_kind, f.step_id) for f in result.failures] == [("heel rule", "rule_28")]
        assert RunState.HEEL_B_RUNNING in result.state_history
        fired = _by_rule(_read(cdm_connector, fetch_heel_results))
        assert {27, 29, 30} <= set(fired)
        assert 28 not in fired
