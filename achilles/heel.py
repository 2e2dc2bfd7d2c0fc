"""Two-phase heel rule engine.

Phase A runs independent and derived rules in parallel; they only read the
merged analysis results. Their scratch tables are merged into
``achilles_results_derived`` and ``achilles_heel_results`` before Phase B,
whose dependent rules run one at a time, in rule ID order, on a single
session. Each dependent rule reads the merged derived table and its output
is appended there before the next rule starts.
"""

from typing import List, Optional, Sequence

from achilles.base import (
    HEEL_RESULTS_SCHEMA,
    RESULTS_DERIVED_SCHEMA,
    SERIAL_HEEL_RESULTS,
    SERIAL_RESULTS_DERIVED,
    DetailTableShape,
    HeelRuleDefinition,
    RuleKind,
)
from achilles.catalog import rules_of_kind
from achilles.context import RunContext
from achilles.errors import AchillesError, DatabaseConnectionError, failure_from_exception
from achilles.merge import MergeEngine
from achilles.pool import TaskOutcome, WorkerPool, WorkItem
from achilles.session import Session
from achilles.sqlrender import TemplateStore, translate
from achilles.utils import drop_table_sql, scratch_name

DERIVED_SHAPE = "results_derived"
HEEL_RESULTS_SHAPE = "heel_results"


def rule_scratch_table(ctx: RunContext, rule: HeelRuleDefinition) -> str:
    s = ctx.settings
    return scratch_name(s.scratch_database_schema, s.temp_heel_prefix, rule.name)


def serial_scratch_table(ctx: RunContext, rule: HeelRuleDefinition, kind: str) -> str:
    s = ctx.settings
    return scratch_name(s.scratch_database_schema, s.temp_heel_prefix, rule.name, kind)


def heel_scratch_tables(ctx: RunContext, rule: HeelRuleDefinition) -> List[str]:
    """Every scratch table *rule* can write."""
    if rule.kind is RuleKind.DEPENDENT:
        return [
            serial_scratch_table(ctx, rule, SERIAL_HEEL_RESULTS),
            serial_scratch_table(ctx, rule, SERIAL_RESULTS_DERIVED),
        ]
    return [rule_scratch_table(ctx, rule)]


def build_heel_shapes(
    ctx: RunContext, rules: Sequence[HeelRuleDefinition]
) -> List[DetailTableShape]:
    """Return the Phase A shapes: derived rules feed one, independent rules the other."""
    prefix = ctx.settings.temp_heel_prefix
    ordered = sorted(rules, key=lambda r: r.rule_id)
    return [
        DetailTableShape(
            shape_id=DERIVED_SHAPE,
            table_name="achilles_results_derived",
            schema=RESULTS_DERIVED_SCHEMA,
            table_prefix=prefix,
            member_ids=[r.name for r in rules_of_kind(ordered, RuleKind.DERIVED)],
            count_field=None,
        ),
        DetailTableShape(
            shape_id=HEEL_RESULTS_SHAPE,
            table_name="achilles_heel_results",
            schema=HEEL_RESULTS_SCHEMA,
            table_prefix=prefix,
            member_ids=[r.name for r in rules_of_kind(ordered, RuleKind.INDEPENDENT)],
            count_field=None,
        ),
    ]


class HeelEngine:
    def __init__(
        self,
        ctx: RunContext,
        pool: WorkerPool,
        templates: TemplateStore,
        merger: MergeEngine,
    ):
        self.ctx = ctx
        self.pool = pool
        self.templates = templates
        self.merger = merger

    def _params(self, rule: HeelRuleDefinition) -> dict:
        settings = self.ctx.settings
        return {
            **settings.base_params(),
            **settings.thresholds.as_params(),
            "heelName": rule.name,
            "ruleId": rule.rule_id,
        }

    def _drop_first(self, session: Session, names: Sequence[str]) -> None:
        if not self.ctx.settings.uses_temp_tables:
            drops = "\n".join(drop_table_sql(n) for n in names)
            session.execute(translate(drops, self.ctx.settings.dialect))

    # -- Phase A -------------------------------------------------------------

    def _phase_a_step(self, rule: HeelRuleDefinition):
        table = rule_scratch_table(self.ctx, rule)

        def run(session: Session) -> None:
            self.ctx.register_scratch(table)
            self.ctx.begin_file(f"heel_{rule.name}.sql")
            self.ctx.log(f"  RUN   heel {rule.kind.value} {rule.name}")
            self._drop_first(session, [table])
            session.execute(
                self.templates.render_translate(
                    rule.template_name, self.ctx.settings.dialect, **self._params(rule)
                )
            )

        return run

    def run_phase_a(
        self, rules: Sequence[HeelRuleDefinition], session: Optional[Session] = None
    ) -> List[TaskOutcome]:
        """Run independent and derived rules over the pool."""
        selected = rules_of_kind(
            sorted(rules, key=lambda r: r.rule_id), RuleKind.INDEPENDENT, RuleKind.DERIVED
        )
        items = [WorkItem("heel rule", r.name, self._phase_a_step(r)) for r in selected]
        self.ctx.log(f"Heel phase A: {len(items)} rule(s) on {self.pool.num_workers} worker(s)")
        outcomes = self.pool.run(items, session=session)
        self.ctx.record_outcomes(outcomes)
        return outcomes

    def merge_phase_a(self, session: Session, rules: Sequence[HeelRuleDefinition]) -> None:
        """Materialize Phase A output; heel tables are always rebuilt and never redacted."""
        for shape in build_heel_shapes(self.ctx, rules):
            try:
                self.merger.merge(session, shape, redact=False, create=True)
            except AchillesError as exc:
                self.ctx.record_failures(
                    [failure_from_exception("merge", shape.shape_id, exc, shape=shape.shape_id)]
                )
                if isinstance(exc, DatabaseConnectionError):
                    self.ctx.token.cancel()
                    return

    # -- Phase B -------------------------------------------------------------

    def run_phase_b(self, session: Session, rules: Sequence[HeelRuleDefinition]) -> None:
        """Run dependent rules serially on *session*, appending each rule's output."""
        shapes = {s.shape_id: s for s in build_heel_shapes(self.ctx, rules)}
        dependents = rules_of_kind(sorted(rules, key=lambda r: r.rule_id), RuleKind.DEPENDENT)
        self.ctx.log(f"Heel phase B: {len(dependents)} dependent rule(s)")
        for i, rule in enumerate(dependents):
            if self.ctx.token.cancelled:
                self.ctx.cancelled.extend(f"heel rule:{r.name}" for r in dependents[i:])
                break
            try:
                self._run_dependent(session, rule, shapes)
            except AchillesError as exc:
                failure = failure_from_exception("heel rule", rule.name, exc)
                self.ctx.record_failures([failure])
                self.ctx.log(f"  FAIL  {failure.describe()}")
                # a lost session cannot run the remaining rules
                if self.ctx.settings.fail_fast or isinstance(exc, DatabaseConnectionError):
                    self.ctx.token.cancel()

    def _run_dependent(self, session: Session, rule: HeelRuleDefinition, shapes: dict) -> None:
        hr_table, rd_table = heel_scratch_tables(self.ctx, rule)
        outputs = [hr_table, rd_table] if rule.emits_derived else [hr_table]
        for name in outputs:
            self.ctx.register_scratch(name)
        self.ctx.begin_file(f"heel_{rule.name}.sql")
        self.ctx.log(f"  RUN   heel dependent {rule.name}")
        self._drop_first(session, outputs)
        session.execute(
            self.templates.render_translate(
                rule.template_name, self.ctx.settings.dialect, **self._params(rule)
            )
        )
        if rule.emits_derived:
            self.merger.append_from(session, shapes[DERIVED_SHAPE], rd_table)
        self.merger.append_from(session, shapes[HEEL_RESULTS_SHAPE], hr_table)
