"""Default configuration for Achilles runs.

Every option a run understands is listed here with its default. Override
any value at runtime by passing an *overrides* dict (or a YAML file) to
``load_config()``; ``RunSettings.from_config`` validates the result.
"""

DEFAULT_CONFIG = {
    # ── Connection ─────────────────────────────────────────────────────
    # One of: sql server, postgresql, sqlite, spark (aliases accepted)
    "dialect": "sql server",
    # ── Schemas ────────────────────────────────────────────────────────
    "cdm_database_schema": None,
    # Defaults to the CDM schema when None
    "results_database_schema": None,
    # "#" runs everything on one session with temp tables
    "scratch_database_schema": "#",
    # ── Source ─────────────────────────────────────────────────────────
    "source_name": "",
    "cdm_version": "5",
    "general_population": True,
    # ── Selection ──────────────────────────────────────────────────────
    # None = every analysis in the catalog
    "analysis_ids": None,
    "run_cost_analysis": False,
    "run_heel": True,
    # Query each CDM table the analyses read before running them
    "validate_schema": False,
    # ── Privacy ────────────────────────────────────────────────────────
    # Rows with count_value <= this are dropped at merge; None disables
    "small_cell_count": 5,
    # ── Execution ──────────────────────────────────────────────────────
    # Forced to 1 when scratch_database_schema is "#"
    "num_threads": 1,
    "fail_fast": False,
    "max_acquire_attempts": 3,
    # ── Scratch tables ─────────────────────────────────────────────────
    "temp_achilles_prefix": "tmpach",
    "temp_heel_prefix": "tmpheel",
    # False defers cleanup to drop_all_scratch_tables()
    "drop_scratch_tables": True,
    # ── Result tables ──────────────────────────────────────────────────
    # False appends into existing result tables instead of rebuilding them
    "create_table": True,
    # Only honoured on SQL Server and PostgreSQL
    "create_indices": True,
    # ── SQL-only mode ──────────────────────────────────────────────────
    # Write the SQL to <output_folder>/v<cdm_version>/ instead of running it
    "sql_only": False,
    "output_folder": "output",
    # ── Heel thresholds ────────────────────────────────────────────────
    "thresholds": {
        "age_warning": 125,
        "outpatient_visit_perc": 0.43,
        "minimal_pt_meas_dx_rx": 20.5,
    },
    # ── Output ─────────────────────────────────────────────────────────
    "verbose": True,
}
