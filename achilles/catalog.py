"""Analysis and heel-rule catalogs loaded from the packaged CSV files."""

import csv
import io
from importlib import resources
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar, Union

from achilles.base import (
    AnalysisDefinition,
    Distribution,
    HeelRuleDefinition,
    RuleCategory,
    RuleKind,
    Severity,
)
from achilles.errors import ConfigurationError

T = TypeVar("T")

ANALYSIS_DETAILS_CSV = "analysis_details.csv"
HEEL_RULES_CSV = "heel_rules.csv"


def _read_rows(path: Optional[Union[str, Path]], default_name: str) -> List[dict]:
    if path is None:
        text = resources.files("achilles").joinpath("csv", default_name).read_text(
            encoding="utf-8"
        )
    else:
        text = Path(path).read_text(encoding="utf-8")
    reader = csv.DictReader(io.StringIO(text))
    return [{k.strip().upper(): (v or "").strip() for k, v in row.items() if k} for row in reader]


def _parse(rows: List[dict], source: str, build: Callable[[dict], T]) -> List[T]:
    entries = []
    for line_no, row in enumerate(rows, start=2):
        try:
            entries.append(build(row))
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"{source}, line {line_no}: invalid row ({exc})") from exc
    return entries


def _flag(value: str) -> bool:
    return value not in ("", "0", "false", "FALSE", "False")


def _optional(value: str) -> Optional[str]:
    return value or None


def _analysis_from_row(row: dict) -> AnalysisDefinition:
    return AnalysisDefinition(
        analysis_id=int(row["ANALYSIS_ID"]),
        name=row["ANALYSIS_NAME"],
        stratum_names=tuple(_optional(row.get(f"STRATUM_{i}_NAME", "")) for i in range(1, 6)),
        distribution=Distribution(int(row.get("DISTRIBUTION") or 0)),
        is_cost=_flag(row.get("COST", "0")),
        distributed_field=_optional(row.get("DISTRIBUTED_FIELD", "")),
    )


def _rule_from_row(row: dict) -> HeelRuleDefinition:
    return HeelRuleDefinition(
        rule_id=int(row["RULE_ID"]),
        name=row["RULE_NAME"],
        kind=RuleKind(row["RULE_KIND"].lower()),
        category=RuleCategory(row.get("RULE_TYPE", "dq").lower() or "dq"),
        severity=Severity(row.get("SEVERITY", "warning").lower() or "warning"),
        linked_measure=_optional(row.get("LINKED_MEASURE", "")),
        general_population_only=_flag(row.get("GENERAL_POPULATION_ONLY", "0")),
        emits_derived=_flag(row.get("EMITS_DERIVED", "0")),
        description=row.get("RULE_DESCRIPTION", ""),
    )


def _check_unique(entries: Sequence, key: Callable, source: str) -> None:
    seen = set()
    for entry in entries:
        k = key(entry)
        if k in seen:
            raise ConfigurationError(f"{source}: duplicate key {k!r}")
        seen.add(k)


def load_analysis_details(path: Optional[Union[str, Path]] = None) -> List[AnalysisDefinition]:
    """Return every analysis in the catalog, ordered by analysis ID."""
    source = str(path or ANALYSIS_DETAILS_CSV)
    analyses = _parse(_read_rows(path, ANALYSIS_DETAILS_CSV), source, _analysis_from_row)
    _check_unique(analyses, lambda a: a.analysis_id, source)
    return sorted(analyses, key=lambda a: a.analysis_id)


def load_heel_rules(path: Optional[Union[str, Path]] = None) -> List[HeelRuleDefinition]:
    """Return every heel rule in the catalog, ordered by rule ID."""
    source = str(path or HEEL_RULES_CSV)
    rules = _parse(_read_rows(path, HEEL_RULES_CSV), source, _rule_from_row)
    _check_unique(rules, lambda r: r.rule_id, source)
    _check_unique(rules, lambda r: r.name, source)
    return sorted(rules, key=lambda r: r.rule_id)


def filter_analyses(
    analyses: Iterable[AnalysisDefinition],
    analysis_ids: Optional[Iterable[int]] = None,
    run_cost_analysis: bool = False,
) -> List[AnalysisDefinition]:
    """Apply the explicit ID subset and the cost-inclusion flag."""
    selected = list(analyses)
    if analysis_ids is not None:
        wanted = {int(i) for i in analysis_ids}
        selected = [a for a in selected if a.analysis_id in wanted]
    if not run_cost_analysis:
        selected = [a for a in selected if not a.is_cost]
    return selected


def filter_rules(
    rules: Iterable[HeelRuleDefinition], general_population: bool = True
) -> List[HeelRuleDefinition]:
    """Drop general-population-only rules for sources that are not."""
    return [r for r in rules if general_population or not r.general_population_only]


def rules_of_kind(
    rules: Iterable[HeelRuleDefinition], *kinds: RuleKind
) -> List[HeelRuleDefinition]:
    return [r for r in rules if r.kind in kinds]
