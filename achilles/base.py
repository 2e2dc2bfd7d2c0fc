"""Catalog types and result-table schemas for Achilles runs."""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List, Optional, Tuple

from pyspark.sql.types import (
    DataType,
    DoubleType,
    IntegerType,
    LongType,
    StringType,
    StructField,
    StructType,
)

# Scratch schema sentinel selecting single-session mode with temp tables.
TEMP_SCHEMA = "#"

# Shape suffixes placed between a scratch prefix and the step identifier.
DIST_SHAPE_SUFFIX = "dist"
SERIAL_HEEL_RESULTS = "serial_hr"
SERIAL_RESULTS_DERIVED = "serial_rd"
SHAPE_SUFFIXES = (DIST_SHAPE_SUFFIX, SERIAL_HEEL_RESULTS, SERIAL_RESULTS_DERIVED)

# ---------------------------------------------------------------------------
# Result table schemas -- every merged table is cast to one of these.
# ---------------------------------------------------------------------------
_STRATA = [StructField(f"stratum_{i}", StringType(), nullable=True) for i in range(1, 6)]

RESULTS_SCHEMA = StructType(
    [StructField("analysis_id", IntegerType(), nullable=False)]
    + _STRATA
    + [StructField("count_value", LongType(), nullable=True)]
)

RESULTS_DIST_SCHEMA = StructType(
    [StructField("analysis_id", IntegerType(), nullable=False)]
    + _STRATA
    + [
        StructField("count_value", LongType(), nullable=True),
        StructField("min_value", DoubleType(), nullable=True),
        StructField("max_value", DoubleType(), nullable=True),
        StructField("avg_value", DoubleType(), nullable=True),
        StructField("stdev_value", DoubleType(), nullable=True),
        StructField("median_value", DoubleType(), nullable=True),
        StructField("p10_value", DoubleType(), nullable=True),
        StructField("p25_value", DoubleType(), nullable=True),
        StructField("p75_value", DoubleType(), nullable=True),
        StructField("p90_value", DoubleType(), nullable=True),
    ]
)

RESULTS_DERIVED_SCHEMA = StructType(
    [
        StructField("analysis_id", IntegerType(), nullable=True),
        StructField("stratum_1", StringType(), nullable=True),
        StructField("stratum_2", StringType(), nullable=True),
        StructField("statistic_value", DoubleType(), nullable=True),
        StructField("measure_id", StringType(), nullable=True),
    ]
)

HEEL_RESULTS_SCHEMA = StructType(
    [
        StructField("analysis_id", IntegerType(), nullable=True),
        StructField("achilles_heel_warning", StringType(), nullable=True),
        StructField("rule_id", IntegerType(), nullable=True),
        StructField("record_count", LongType(), nullable=True),
    ]
)

ANALYSIS_SCHEMA = StructType(
    [
        StructField("analysis_id", IntegerType(), nullable=False),
        StructField("analysis_name", StringType(), nullable=True),
    ]
    + [StructField(f"stratum_{i}_name", StringType(), nullable=True) for i in range(1, 6)]
)

_SQL_TYPES = {
    "int": "int",
    "bigint": "bigint",
    "double": "float",
    "string": "varchar(255)",
}


def sql_type(data_type: DataType) -> str:
    """Return the SQL Server-flavoured type name used in CAST expressions."""
    name = data_type.simpleString()
    try:
        return _SQL_TYPES[name]
    except KeyError:
        raise ValueError(f"No SQL type mapping for {name}") from None


def field_schema(schema: StructType) -> List[Tuple[str, str]]:
    """Return ``(field_name, sql_type)`` pairs in declaration order."""
    return [(f.name, sql_type(f.dataType)) for f in schema.fields]


# ---------------------------------------------------------------------------
# Catalog entries
# ---------------------------------------------------------------------------


class Distribution(IntEnum):
    NONE = 0
    DISTRIBUTIONAL = 1
    BOTH = 2


class RuleKind(str, Enum):
    INDEPENDENT = "independent"
    DERIVED = "derived"
    DEPENDENT = "dependent"


class RuleCategory(str, Enum):
    CONFORMANCE = "conformance"
    DQ = "dq"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    NOTIFICATION = "notification"


class StorageMode(str, Enum):
    SESSION_SCOPED = "session-scoped"
    SHARED_SCRATCH = "shared-scratch"


@dataclass(frozen=True)
class AnalysisDefinition:
    """One row of the analysis catalog."""

    analysis_id: int
    name: str
    stratum_names: Tuple[Optional[str], ...] = (None, None, None, None, None)
    distribution: Distribution = Distribution.NONE
    is_cost: bool = False
    distributed_field: Optional[str] = None

    @property
    def is_plain(self) -> bool:
        return self.distribution in (Distribution.NONE, Distribution.BOTH)

    @property
    def is_distributional(self) -> bool:
        return self.distribution in (Distribution.DISTRIBUTIONAL, Distribution.BOTH)


@dataclass(frozen=True)
class HeelRuleDefinition:
    """One row of the heel rule catalog.

    ``name`` doubles as the template name and the scratch-table suffix.
    """

    rule_id: int
    name: str
    kind: RuleKind
    category: RuleCategory = RuleCategory.DQ
    severity: Severity = Severity.WARNING
    linked_measure: Optional[str] = None
    general_population_only: bool = False
    emits_derived: bool = False
    description: str = ""

    @property
    def template_name(self) -> str:
        folder = "dependents" if self.kind is RuleKind.DEPENDENT else "independents"
        return f"heels/{folder}/{self.name}.sql"


@dataclass(frozen=True)
class ScratchTableHandle:
    """Identity of one transient scratch table."""

    logical_name: str
    physical_name: str
    schema_qualifier: str
    session_owner: Optional[str] = None

    @property
    def is_temporary(self) -> bool:
        return self.schema_qualifier == TEMP_SCHEMA


@dataclass
class DetailTableShape:
    """How a set of scratch tables is unioned and cast into one result table."""

    shape_id: str
    table_name: str
    schema: StructType
    table_prefix: str
    member_ids: List = field(default_factory=list)
    count_field: Optional[str] = "count_value"

    @property
    def fields(self) -> List[Tuple[str, str]]:
        return field_schema(self.schema)
