"""Result fetching, heel summarization and formatting utilities."""

from typing import Dict, Iterable, List, Optional

from achilles.base import HeelRuleDefinition
from achilles.catalog import load_heel_rules
from achilles.session import Session
from achilles.sqlrender import translate

_SEVERITIES = ("error", "warning", "notification")


def fetch_analysis_results(
    session: Session,
    results_schema: str,
    analysis_id: Optional[int] = None,
    distribution: bool = False,
) -> List[dict]:
    """Return rows of ``achilles_results`` (or ``achilles_results_dist``)."""
    table = "achilles_results_dist" if distribution else "achilles_results"
    where = f" WHERE analysis_id = {int(analysis_id)}" if analysis_id is not None else ""
    sql = (
        f"SELECT * FROM {results_schema}.{table}{where} "
        "ORDER BY analysis_id, stratum_1, stratum_2"
    )
    return session.query(translate(sql, session.dialect))


def fetch_heel_results(session: Session, results_schema: str) -> List[dict]:
    """Return every heel warning, ordered by rule ID."""
    sql = (
        "SELECT analysis_id, achilles_heel_warning, rule_id, record_count "
        f"FROM {results_schema}.achilles_heel_results "
        "ORDER BY rule_id, analysis_id, achilles_heel_warning"
    )
    return session.query(translate(sql, session.dialect))


def fetch_derived_results(session: Session, results_schema: str) -> List[dict]:
    sql = (
        "SELECT analysis_id, stratum_1, stratum_2, statistic_value, measure_id "
        f"FROM {results_schema}.achilles_results_derived "
        "ORDER BY measure_id, stratum_1"
    )
    return session.query(translate(sql, session.dialect))


def _severity(row: dict, by_rule: Dict[int, HeelRuleDefinition]) -> str:
    rule = by_rule.get(row.get("rule_id"))
    if rule is not None:
        return rule.severity.value
    # rules outside the catalog: fall back to the warning text prefix
    prefix = str(row.get("achilles_heel_warning") or "").split(":", 1)[0].strip().lower()
    return prefix if prefix in _SEVERITIES else "warning"


def summarize_heel_results(
    rows: Iterable[dict], rules: Optional[Iterable[HeelRuleDefinition]] = None
) -> List[dict]:
    """Count heel warnings per rule and severity.

    Returns one dict per rule (``rule_id``, ``rule_name``, ``total``,
    ``error_count``, ``warning_count``, ``notification_count``), ordered by
    rule ID, plus a final ``__OVERALL__`` row.
    """
    by_rule = {r.rule_id: r for r in (rules if rules is not None else load_heel_rules())}
    per_rule: Dict[int, dict] = {}
    for row in rows:
        rule_id = row.get("rule_id")
        entry = per_rule.get(rule_id)
        if entry is None:
            rule = by_rule.get(rule_id)
            entry = {
                "rule_id": rule_id,
                "rule_name": rule.name if rule is not None else str(rule_id),
                "total": 0,
                **{f"{s}_count": 0 for s in _SEVERITIES},
            }
            per_rule[rule_id] = entry
        entry["total"] += 1
        entry[f"{_severity(row, by_rule)}_count"] += 1

    summary = [per_rule[k] for k in sorted(per_rule, key=lambda k: (k is None, k or 0))]
    if not summary:
        return []
    overall = {"rule_id": None, "rule_name": "__OVERALL__", "total": 0}
    for s in _SEVERITIES:
        overall[f"{s}_count"] = sum(e[f"{s}_count"] for e in summary)
    overall["total"] = sum(e["total"] for e in summary)
    return summary + [overall]


def format_summary_text(summary: List[dict]) -> str:
    """Return a formatted text table from *summary*."""
    if not summary:
        return "No heel results."

    header = (
        f"{'Rule':<30} {'Total':>6} {'ERROR':>8} {'WARNING':>8} {'NOTIFY':>8}"
    )
    sep = "-" * len(header)
    lines = [sep, header, sep]

    for r in summary:
        name = r["rule_name"]
        if name == "__OVERALL__":
            lines.append(sep)
            name = "OVERALL"
        lines.append(
            f"{name:<30} {r['total']:>6} {r['error_count']:>8} "
            f"{r['warning_count']:>8} {r['notification_count']:>8}"
        )

    lines.append(sep)
    return "\n".join(lines)
