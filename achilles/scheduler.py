"""Analysis scheduling: one work item per analysis, fanned out over the pool."""

from typing import Dict, List, Optional, Sequence

from achilles.base import DIST_SHAPE_SUFFIX, AnalysisDefinition
from achilles.context import RunContext
from achilles.errors import ConfigurationError, ExecutionError
from achilles.pool import TaskOutcome, WorkerPool, WorkItem
from achilles.session import Session
from achilles.sqlrender import TemplateStore, render_union, translate
from achilles.utils import drop_table_sql, quote_literal, scratch_name


def analysis_template(analysis: AnalysisDefinition) -> str:
    return f"analyses/{analysis.analysis_id}.sql"


def analysis_scratch_tables(ctx: RunContext, analysis: AnalysisDefinition) -> List[str]:
    """Physical scratch tables an analysis writes, one per detail shape it feeds."""
    s = ctx.settings
    names = []
    if analysis.is_plain:
        names.append(
            scratch_name(s.scratch_database_schema, s.temp_achilles_prefix, analysis.analysis_id)
        )
    if analysis.is_distributional:
        names.append(
            scratch_name(
                s.scratch_database_schema,
                s.temp_achilles_prefix,
                analysis.analysis_id,
                DIST_SHAPE_SUFFIX,
            )
        )
    return names


# Columns the packaged analyses read from each CDM table
CDM_TABLES: Dict[str, List[str]] = {
    "person": [
        "person_id", "gender_concept_id", "year_of_birth", "race_concept_id",
        "ethnicity_concept_id",
    ],
    "observation_period": [
        "observation_period_id", "person_id", "observation_period_start_date",
        "observation_period_end_date", "period_type_concept_id",
    ],
    "visit_occurrence": [
        "visit_occurrence_id", "person_id", "visit_concept_id", "visit_start_date",
        "visit_end_date", "visit_type_concept_id",
    ],
    "condition_occurrence": [
        "condition_occurrence_id", "person_id", "condition_concept_id",
        "condition_start_date", "condition_type_concept_id",
    ],
    "drug_exposure": [
        "drug_exposure_id", "person_id", "drug_concept_id", "drug_exposure_start_date",
        "drug_type_concept_id",
    ],
    "measurement": [
        "measurement_id", "person_id", "measurement_concept_id", "measurement_date",
        "value_as_number",
    ],
    "cost": [
        "cost_id", "cost_event_id", "cost_domain_id", "cost_type_concept_id",
        "total_charge",
    ],
}


def validate_cdm_schema(ctx: RunContext, session: Session, templates: TemplateStore) -> None:
    """Query every CDM table the run reads, returning no rows.

    Raises ``ConfigurationError`` naming each table that is missing or lacks
    one of the expected columns. The cost table is only checked when cost
    analyses run.
    """
    settings = ctx.settings
    ctx.begin_file("ValidateSchema.sql")
    ctx.log(f"Validating CDM schema {settings.cdm_database_schema}")
    missing = []
    for table, columns in CDM_TABLES.items():
        if table == "cost" and not settings.run_cost_analysis:
            continue
        sql = templates.render_translate(
            "analyses/validate_schema.sql",
            settings.dialect,
            cdmDatabaseSchema=settings.cdm_database_schema,
            cdmTable=table,
            cdmColumns=", ".join(columns),
        )
        try:
            session.query(sql)
        except ExecutionError as exc:
            ctx.log(f"  MISSING  {table}: {exc}")
            missing.append(table)
    if missing:
        raise ConfigurationError(
            f"CDM schema {settings.cdm_database_schema} is missing or incomplete: "
            + ", ".join(missing)
        )


def _null_or_literal(value: Optional[str]) -> str:
    return "NULL" if value is None else quote_literal(value)


def create_analysis_table(
    ctx: RunContext,
    session: Session,
    analyses: Sequence[AnalysisDefinition],
    templates: TemplateStore,
) -> None:
    """(Re)create ``achilles_analysis`` listing the analyses of this run."""
    row_template = templates.load("analyses/analysis_row.sql")
    rows = [
        {
            "analysisId": a.analysis_id,
            "analysisName": quote_literal(a.name),
            **{
                f"stratum{i}Name": _null_or_literal(name)
                for i, name in enumerate(a.stratum_names, start=1)
            },
        }
        for a in analyses
    ]
    if not rows:
        return
    sql = templates.render_translate(
        "analyses/create_analysis_table.sql",
        ctx.settings.dialect,
        resultsDatabaseSchema=ctx.settings.results_database_schema,
        analysesSqls=render_union(row_template, rows),
    )
    session.execute(sql)


class AnalysisScheduler:
    """Turns the selected analyses into work items and runs them."""

    def __init__(self, ctx: RunContext, pool: WorkerPool, templates: TemplateStore):
        self.ctx = ctx
        self.pool = pool
        self.templates = templates

    def _step(self, analysis: AnalysisDefinition):
        settings = self.ctx.settings
        scratch_tables = analysis_scratch_tables(self.ctx, analysis)

        def run(session: Session) -> None:
            for name in scratch_tables:
                self.ctx.register_scratch(name)
            self.ctx.begin_file(f"analysis_{analysis.analysis_id}.sql")
            self.ctx.log(f"  RUN   analysis {analysis.analysis_id}: {analysis.name}")
            if not settings.uses_temp_tables:
                drops = "\n".join(drop_table_sql(name) for name in scratch_tables)
                session.execute(translate(drops, settings.dialect))
            sql = self.templates.render_translate(
                analysis_template(analysis),
                settings.dialect,
                analysisId=analysis.analysis_id,
                **settings.base_params(),
            )
            session.execute(sql)

        return run

    def plan(self, analyses: Sequence[AnalysisDefinition]) -> List[WorkItem]:
        return [
            WorkItem("analysis", str(a.analysis_id), self._step(a))
            for a in sorted(analyses, key=lambda a: a.analysis_id)
        ]

    def run(
        self, analyses: Sequence[AnalysisDefinition], session: Optional[Session] = None
    ) -> List[TaskOutcome]:
        """Run every analysis; failures are reported per analysis, never raised."""
        items = self.plan(analyses)
        self.ctx.log(
            f"Running {len(items)} analyses on {self.pool.num_workers} worker(s) "
            f"({self.ctx.settings.storage_mode.value})"
        )
        outcomes = self.pool.run(items, session=session)
        self.ctx.record_outcomes(outcomes)
        return outcomes
