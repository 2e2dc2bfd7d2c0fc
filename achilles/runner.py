"""Run orchestration: analyses, merge, heel phases and cleanup."""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from achilles.base import AnalysisDefinition, HeelRuleDefinition, StorageMode
from achilles.catalog import filter_analyses, filter_rules, load_analysis_details, load_heel_rules
from achilles.context import RunContext, RunSettings, RunState, validate_cdm_version
from achilles.errors import (
    AchillesError,
    ConfigurationError,
    DatabaseConnectionError,
    RunFailedError,
    StepFailure,
    failure_from_exception,
)
from achilles.heel import HeelEngine, heel_scratch_tables
from achilles.merge import MergeEngine, build_detail_shapes
from achilles.pool import CancellationToken, WorkerPool
from achilles.scheduler import (
    AnalysisScheduler,
    analysis_scratch_tables,
    create_analysis_table,
    validate_cdm_schema,
)
from achilles.session import Connector, Session, SessionManager, SparkConnector, SqlFileSink
from achilles.sqlrender import SPARK, TemplateStore, translate
from achilles.utils import drop_table_sql
from config.loader import load_config

__all__ = [
    "RunResult",
    "drop_all_scratch_tables",
    "resolve_settings",
    "run_achilles",
    "run_heel",
    "validate_cdm_version",
]


@dataclass
class RunResult:
    """Final status of one run."""

    status: RunState
    failures: List[StepFailure] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    state_history: List[RunState] = field(default_factory=list)
    analysis_ids: List[int] = field(default_factory=list)
    rule_names: List[str] = field(default_factory=list)
    sql_files: List[Path] = field(default_factory=list)
    cleanup_errors: List[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is RunState.DONE

    def raise_for_status(self) -> None:
        if not self.ok:
            raise RunFailedError(self.failures)


class _PhaseFailed(Exception):
    """Internal: stop at a phase boundary because steps failed."""


def resolve_settings(
    config: Optional[dict] = None, yaml_path: Optional[str] = None
) -> RunSettings:
    """Merge *config* over the defaults (and an optional YAML file) and validate."""
    return RunSettings.from_config(load_config(overrides=config, yaml_path=yaml_path))


def default_connector(settings: RunSettings) -> Connector:
    if settings.dialect == SPARK:
        return SparkConnector()
    raise ConfigurationError(
        f"A connector is required for dialect {settings.dialect!r}; "
        "pass SqlAlchemyConnector(url) as the first argument"
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def run_achilles(
    connector: Optional[Connector] = None,
    config: Optional[dict] = None,
    yaml_path: Optional[str] = None,
    analyses: Optional[Sequence[AnalysisDefinition]] = None,
    rules: Optional[Sequence[HeelRuleDefinition]] = None,
    templates: Optional[TemplateStore] = None,
    listeners: Optional[List[Callable[[str, str], None]]] = None,
    token: Optional[CancellationToken] = None,
) -> RunResult:
    """Characterize a CDM database and, unless disabled, run the heel rules.

    Parameters
    ----------
    connector : Connector, optional
        Where the SQL runs. Defaults to the active Spark session for the
        ``spark`` dialect; required otherwise (ignored when ``sql_only``).
    config : dict, optional
        Overrides merged over ``DEFAULT_CONFIG``.
    yaml_path : str, optional
        YAML file merged between the defaults and *config*.
    analyses, rules : list, optional
        Catalog entries to use instead of the packaged catalogs.
    templates : TemplateStore, optional
        Template source; defaults to the packaged SQL.
    listeners : list of callables, optional
        Called with ``(session_id, statement)`` before every statement.
    token : CancellationToken, optional
        Cancel it from another thread to stop the run. Steps not yet started
        are listed in ``cancelled``; result tables merged before the cancel
        are kept.

    Returns
    -------
    RunResult
        ``status`` is ``RunState.DONE`` or ``RunState.FAILED``; every failed
        step is listed in ``failures``. A cancelled run also ends in FAILED.
        Step failures are never raised; call ``raise_for_status()`` for that.
    """
    settings = resolve_settings(config, yaml_path)
    return _execute(
        settings, connector, analyses, rules, templates, listeners, token, run_analyses=True
    )


def run_heel(
    connector: Optional[Connector] = None,
    config: Optional[dict] = None,
    yaml_path: Optional[str] = None,
    rules: Optional[Sequence[HeelRuleDefinition]] = None,
    templates: Optional[TemplateStore] = None,
    listeners: Optional[List[Callable[[str, str], None]]] = None,
    token: Optional[CancellationToken] = None,
) -> RunResult:
    """Run only the heel rules, against result tables a previous run merged."""
    settings = resolve_settings(config, yaml_path)
    return _execute(
        settings, connector, [], rules, templates, listeners, token, run_analyses=False
    )


def drop_all_scratch_tables(
    connector: Optional[Connector] = None,
    config: Optional[dict] = None,
    yaml_path: Optional[str] = None,
    analyses: Optional[Sequence[AnalysisDefinition]] = None,
    rules: Optional[Sequence[HeelRuleDefinition]] = None,
) -> List[str]:
    """Drop every scratch table any analysis or heel rule could have left behind.

    Safe to repeat. Temp-table runs leave nothing behind, so nothing is
    dropped when the scratch schema is ``#``. Returns the names dropped.
    """
    settings = resolve_settings(config, yaml_path)
    ctx = RunContext(settings)
    if settings.uses_temp_tables:
        ctx.log("Scratch schema is '#'; temp tables need no cleanup")
        return []

    names: List[str] = []
    for analysis in analyses if analyses is not None else load_analysis_details():
        names.extend(analysis_scratch_tables(ctx, analysis))
    for rule in rules if rules is not None else load_heel_rules():
        names.extend(heel_scratch_tables(ctx, rule))

    sessions = SessionManager(connector or default_connector(settings))
    try:
        session = sessions.acquire_with_retry(settings.max_acquire_attempts)
        ctx.log(f"Dropping {len(names)} scratch table(s) in {settings.scratch_database_schema}")
        session.execute(translate("\n".join(drop_table_sql(n) for n in names), settings.dialect))
    finally:
        sessions.close()
    return names


# ---------------------------------------------------------------------------
# Run body
# ---------------------------------------------------------------------------


def _execute(
    settings: RunSettings,
    connector: Optional[Connector],
    analyses: Optional[Sequence[AnalysisDefinition]],
    rules: Optional[Sequence[HeelRuleDefinition]],
    templates: Optional[TemplateStore],
    listeners: Optional[List[Callable[[str, str], None]]],
    token: Optional[CancellationToken],
    run_analyses: bool,
) -> RunResult:
    t0 = time.time()
    templates = templates or TemplateStore()

    # -- resolve catalogs -----------------------------------------------------
    if run_analyses:
        catalog = analyses if analyses is not None else load_analysis_details()
        selected = filter_analyses(catalog, settings.analysis_ids, settings.run_cost_analysis)
    else:
        selected = []
    if settings.run_heel or not run_analyses:
        selected_rules = filter_rules(
            rules if rules is not None else load_heel_rules(), settings.general_population
        )
    else:
        selected_rules = []

    # -- resolve connector ----------------------------------------------------
    ctx = RunContext(settings, token)
    sink: Optional[SqlFileSink] = None
    if settings.sql_only:
        sink = SqlFileSink(settings.dialect, settings.output_folder, settings.cdm_version)
        connector = sink
        ctx.sink = sink
    elif connector is None:
        connector = default_connector(settings)

    sessions = SessionManager(connector, listeners)
    shared = not settings.sql_only and settings.storage_mode is StorageMode.SHARED_SCRATCH
    pool = WorkerPool(
        sessions,
        num_workers=settings.num_threads if shared else 1,
        token=ctx.token,
        fail_fast=settings.fail_fast,
        max_acquire_attempts=settings.max_acquire_attempts,
        verbose=settings.verbose,
    )
    merger = MergeEngine(ctx, templates)

    ctx.log(
        f"{len(selected)} analyses, {len(selected_rules)} heel rules, "
        f"dialect={settings.dialect}, scratch={settings.scratch_database_schema}, "
        f"threads={pool.num_workers}"
    )

    # -- run ------------------------------------------------------------------
    session: Optional[Session] = None
    try:
        session = sessions.acquire_with_retry(settings.max_acquire_attempts)
        if run_analyses and settings.validate_schema:
            _validate_stage(ctx, session, templates)
        if run_analyses:
            _analyses_stage(ctx, session, pool, templates, merger, selected)
        if selected_rules:
            _heel_stage(ctx, session, pool, templates, merger, selected_rules)
    except _PhaseFailed as exc:
        ctx.log(f"Stopping after {exc}: {len(ctx.failures)} failure(s)")
    except Exception as exc:  # noqa: BLE001
        ctx.record_failures([failure_from_exception("run", ctx.state.value, exc)])
        ctx.log(f"Run aborted in {ctx.state.value}: {exc}")

    # -- cleanup --------------------------------------------------------------
    ctx.transition(RunState.CLEANUP)
    _cleanup(ctx, sessions, session)
    sql_files: List[Path] = []
    if sink is not None:
        sql_files = sink.write()
        ctx.log(f"SQL written to {sink.folder} ({len(sql_files)} file(s))")
    ctx.transition(RunState.FAILED if ctx.failed else RunState.DONE)

    result = RunResult(
        status=ctx.state,
        failures=list(ctx.failures),
        cancelled=list(ctx.cancelled),
        state_history=list(ctx.history),
        analysis_ids=[a.analysis_id for a in selected],
        rule_names=[r.name for r in selected_rules],
        sql_files=sql_files,
        cleanup_errors=list(ctx.cleanup_errors),
        elapsed=time.time() - t0,
    )
    if settings.verbose:
        _print_summary(result)
    return result


def _check(ctx: RunContext, phase: str) -> None:
    if ctx.failed:
        raise _PhaseFailed(phase)


def _validate_stage(ctx: RunContext, session: Session, templates: TemplateStore) -> None:
    try:
        validate_cdm_schema(ctx, session, templates)
    except ConfigurationError as exc:
        ctx.record_failures(
            [failure_from_exception("schema", ctx.settings.cdm_database_schema, exc)]
        )
    _check(ctx, "schema validation")


def _analyses_stage(
    ctx: RunContext,
    session: Session,
    pool: WorkerPool,
    templates: TemplateStore,
    merger: MergeEngine,
    analyses: Sequence[AnalysisDefinition],
) -> None:
    settings = ctx.settings
    ctx.transition(RunState.ANALYSES_RUNNING)

    try:
        ctx.begin_file("achilles_analysis.sql")
        create_analysis_table(ctx, session, analyses, templates)
    except AchillesError as exc:
        ctx.record_failures([failure_from_exception("analysis table", "achilles_analysis", exc)])
    _check(ctx, "achilles_analysis")

    AnalysisScheduler(ctx, pool, templates).run(analyses, session=session)
    _check(ctx, "analyses")

    for shape in build_detail_shapes(ctx, analyses):
        try:
            merger.merge(session, shape, redact=True, create=settings.create_table)
        except AchillesError as exc:
            ctx.record_failures(
                [failure_from_exception("merge", shape.shape_id, exc, shape=shape.shape_id)]
            )
            if isinstance(exc, DatabaseConnectionError):
                break
    _check(ctx, "merge")

    if settings.create_table:
        try:
            ctx.begin_file("create_indices.sql")
            merger.create_indices(session)
        except AchillesError as exc:
            ctx.record_failures([failure_from_exception("merge", "indices", exc)])
        _check(ctx, "index creation")

    ctx.transition(RunState.ANALYSES_MERGED)


def _heel_stage(
    ctx: RunContext,
    session: Session,
    pool: WorkerPool,
    templates: TemplateStore,
    merger: MergeEngine,
    rules: Sequence[HeelRuleDefinition],
) -> None:
    heel = HeelEngine(ctx, pool, templates, merger)

    ctx.transition(RunState.HEEL_A_RUNNING)
    heel.run_phase_a(rules, session=session)
    _check(ctx, "heel phase A")
    heel.merge_phase_a(session, rules)
    _check(ctx, "heel phase A merge")
    ctx.transition(RunState.HEEL_A_MERGED)

    ctx.transition(RunState.HEEL_B_RUNNING)
    heel.run_phase_b(session, rules)
    _check(ctx, "heel phase B")


def _cleanup(ctx: RunContext, sessions: SessionManager, session: Optional[Session]) -> None:
    """Best effort: errors are printed and kept, never raised."""
    settings = ctx.settings
    names = ctx.scratch_tables
    drop = settings.uses_temp_tables or settings.drop_scratch_tables
    if names and session is not None and drop:
        ctx.begin_file("drop_scratch_tables.sql")
        ctx.log(f"Dropping {len(names)} scratch table(s)")
        for name in names:
            try:
                session.execute(translate(drop_table_sql(name), settings.dialect))
                ctx.forget_scratch(name)
            except AchillesError as exc:
                ctx.cleanup_errors.append(f"{name}: {exc}")
                print(f"[ACHILLES] Cleanup could not drop {name}: {exc}")
    elif names and not drop:
        ctx.log(
            f"Keeping {len(names)} scratch table(s); remove them later with "
            "drop_all_scratch_tables()"
        )
    try:
        sessions.close()
    except Exception as exc:  # noqa: BLE001
        ctx.cleanup_errors.append(f"close: {exc}")
        print(f"[ACHILLES] Cleanup could not close sessions: {exc}")


def _print_summary(result: RunResult) -> None:
    """Print a human-friendly summary to stdout."""
    print(f"\n{'=' * 60}")
    print(
        f"  Achilles  |  {result.status.value}  |  {len(result.analysis_ids)} analyses"
        f"  |  {len(result.rule_names)} heel rules  |  {result.elapsed:.1f}s"
    )
    print(f"{'=' * 60}")
    print(f"  States: {' -> '.join(s.value for s in result.state_history)}")
    if result.failures:
        print(f"  FAILED steps: {len(result.failures)}")
        for failure in result.failures:
            print(f"    {failure.describe()}")
    if result.cancelled:
        print(f"  Cancelled steps: {len(result.cancelled)}")
    if result.cleanup_errors:
        print(f"  Cleanup errors: {len(result.cleanup_errors)}")
    if result.sql_files:
        print(f"  SQL files: {len(result.sql_files)}")
    print(f"{'=' * 60}\n")
