"""Tests for SQLAlchemy sessions and the SQL-only sink."""

import pytest

from achilles.errors import ExecutionError
from achilles.session import SqlFileSink


class TestSqlAlchemySession:
    def test_dialect_from_engine(self, connector):
        assert connector.dialect == "sqlite"

    def test_execute_and_query(self, session):
        session.execute("CREATE TABLE t (a INT, b TEXT); INSERT INTO t VALUES (1, 'x:y %z');")
        assert session.query("SELECT a, b FROM t") == [{"a": 1, "b": "x:y %z"}]

    def test_query_requires_one_statement(self, session):
        with pytest.raises(ExecutionError):
            session.query("SELECT 1; SELECT 2")

    def test_bad_sql_raises_execution_error_with_statement(self, session):
        with pytest.raises(ExecutionError) as excinfo:
            session.execute("SELECT * FROM no_such_table")
        assert excinfo.value.sql == "SELECT * FROM no_such_table"

    def test_table_exists_for_main_and_temp_tables(self, session):
        session.execute("CREATE TABLE main.perm (a INT); CREATE TEMP TABLE s_tmp (a INT);")
        assert session.table_exists("main.perm")
        assert session.table_exists("#s_tmp")
        assert not session.table_exists("main.missing")

    def test_temp_tables_are_private_to_a_session(self, connector, session):
        session.execute("CREATE TEMP TABLE s_private (a INT)")
        other = connector.connect()
        try:
            assert not other.table_exists("#s_private")
        finally:
            other.close()

    def test_stdev_aggregate(self, session):
        session.execute("CREATE TABLE v (x FLOAT); INSERT INTO v VALUES (1), (2), (3), (4);")
        row = session.query("SELECT STDEV(x) AS s, (SELECT STDEV(x) FROM v WHERE x = 1) AS one FROM v")[0]
        assert row["s"] == pytest.approx(1.2909944, rel=1e-6)
        assert row["one"] is None


class TestSqlFileSink:
    def test_statements_go_to_the_current_file(self, tmp_path):
        sink = SqlFileSink("postgresql", tmp_path, cdm_version="5.4")
        session = sink.connect()
        sink.switch("analysis_1.sql")
        session.execute("SELECT 1; SELECT 2;")
        sink.switch("merge_results.sql")
        session.execute("SELECT 3")
        assert sink.statements("analysis_1.sql") == ["SELECT 1", "SELECT 2"]

        paths = sink.write()
        assert {p.name for p in paths} == {"analysis_1.sql", "merge_results.sql"}
        assert (tmp_path / "v5.4" / "analysis_1.sql").read_text() == "SELECT 1;\nSELECT 2;\n"

    def test_capture_session_reports_tables_present(self, tmp_path):
        session = SqlFileSink("sqlite", tmp_path).connect()
        assert session.table_exists("anything")
        assert session.query("SELECT 1") == []
