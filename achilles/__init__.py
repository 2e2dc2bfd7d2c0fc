"""Achilles: OMOP CDM database characterization and Heel data quality rules."""

from achilles.base import AnalysisDefinition, HeelRuleDefinition, RuleKind, Severity
from achilles.catalog import load_analysis_details, load_heel_rules
from achilles.context import RunSettings, RunState
from achilles.errors import AchillesError, RunFailedError, StepFailure
from achilles.runner import (
    RunResult,
    drop_all_scratch_tables,
    run_achilles,
    run_heel,
    validate_cdm_version,
)
from achilles.session import SparkConnector, SqlAlchemyConnector

__all__ = [
    "AnalysisDefinition", "HeelRuleDefinition", "RuleKind", "Severity",
    "load_analysis_details", "load_heel_rules",
    "RunSettings", "RunState", "RunResult",
    "AchillesError", "RunFailedError", "StepFailure",
    "run_achilles", "run_heel", "drop_all_scratch_tables", "validate_cdm_version",
    "SparkConnector", "SqlAlchemyConnector",
]
