"""Run settings, the run state machine and the per-run context."""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from achilles.base import SHAPE_SUFFIXES, TEMP_SCHEMA, StorageMode
from achilles.errors import ConfigurationError, InvalidTransitionError, StepFailure
from achilles.pool import CancellationToken
from achilles.sqlrender import SQL_SERVER, POSTGRESQL, normalize_dialect
from achilles.utils import schema_delim

ACHILLES_VERSION = "1.7"

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def validate_cdm_version(version) -> str:
    """Return *version* as a string, rejecting anything older than CDM v5."""
    version = str(version).strip().lstrip("vV")
    try:
        major = int(version.split(".")[0])
    except ValueError:
        raise ConfigurationError(f"Unrecognised CDM version {version!r}") from None
    if major < 5:
        raise ConfigurationError(f"CDM version {version} is not supported; use 5 or later")
    return version


@dataclass(frozen=True)
class Thresholds:
    age_warning: int = 125
    outpatient_visit_perc: float = 0.43
    minimal_pt_meas_dx_rx: float = 20.5

    def as_params(self) -> Dict[str, float]:
        return {
            "ThresholdAgeWarning": self.age_warning,
            "ThresholdOutpatientVisitPerc": self.outpatient_visit_perc,
            "ThresholdMinimalPtMeasDxRx": self.minimal_pt_meas_dx_rx,
        }


@dataclass(frozen=True)
class RunSettings:
    """Validated, immutable options for one run."""

    dialect: str
    cdm_database_schema: str
    results_database_schema: str
    scratch_database_schema: str = TEMP_SCHEMA
    source_name: str = ""
    analysis_ids: Optional[Tuple[int, ...]] = None
    small_cell_count: Optional[int] = 5
    cdm_version: str = "5"
    run_heel: bool = True
    run_cost_analysis: bool = False
    validate_schema: bool = False
    sql_only: bool = False
    num_threads: int = 1
    temp_achilles_prefix: str = "tmpach"
    temp_heel_prefix: str = "tmpheel"
    drop_scratch_tables: bool = True
    create_table: bool = True
    create_indices: bool = True
    general_population: bool = True
    fail_fast: bool = False
    max_acquire_attempts: int = 3
    thresholds: Thresholds = field(default_factory=Thresholds)
    output_folder: str = "output"
    verbose: bool = True

    @classmethod
    def from_config(cls, config: dict) -> "RunSettings":
        """Build settings from a resolved config dict, rejecting bad combinations."""
        try:
            dialect = normalize_dialect(config["dialect"])
            cdm_schema = config["cdm_database_schema"]
        except KeyError as exc:
            raise ConfigurationError(f"Missing required option {exc.args[0]!r}") from None
        results_schema = config.get("results_database_schema") or cdm_schema
        scratch = config.get("scratch_database_schema") or TEMP_SCHEMA

        cdm_version = validate_cdm_version(config.get("cdm_version", "5"))

        num_threads = int(config.get("num_threads", 1))
        if num_threads < 1:
            raise ConfigurationError("num_threads must be at least 1")
        if num_threads == 1 or scratch == TEMP_SCHEMA:
            # one persistent session holds every scratch table as a temp table
            num_threads = 1
            scratch = TEMP_SCHEMA

        small_cell = config.get("small_cell_count", 5)
        if small_cell is not None:
            small_cell = int(small_cell)
            if small_cell < 0:
                raise ConfigurationError("small_cell_count must be non-negative")

        prefixes = {
            key: config.get(key) or default
            for key, default in (("temp_achilles_prefix", "tmpach"), ("temp_heel_prefix", "tmpheel"))
        }
        for key, prefix in prefixes.items():
            if not prefix.replace("_", "").isalnum():
                raise ConfigurationError(f"{key} must be alphanumeric, got {prefix!r}")
            if prefix.endswith(tuple(f"_{s}" for s in SHAPE_SUFFIXES)):
                # would share names with another prefix's shaped tables
                raise ConfigurationError(f"{key} must not end in a shape suffix, got {prefix!r}")
        if prefixes["temp_achilles_prefix"] == prefixes["temp_heel_prefix"]:
            raise ConfigurationError("temp_achilles_prefix and temp_heel_prefix must differ")

        ids = config.get("analysis_ids")
        thresholds = config.get("thresholds") or {}

        return cls(
            dialect=dialect,
            cdm_database_schema=cdm_schema,
            results_database_schema=results_schema,
            scratch_database_schema=scratch,
            source_name=config.get("source_name") or "",
            analysis_ids=tuple(sorted(int(i) for i in ids)) if ids is not None else None,
            small_cell_count=small_cell,
            cdm_version=cdm_version,
            run_heel=bool(config.get("run_heel", True)),
            run_cost_analysis=bool(config.get("run_cost_analysis", False)),
            validate_schema=bool(config.get("validate_schema", False)),
            sql_only=bool(config.get("sql_only", False)),
            num_threads=num_threads,
            temp_achilles_prefix=prefixes["temp_achilles_prefix"],
            temp_heel_prefix=prefixes["temp_heel_prefix"],
            drop_scratch_tables=bool(config.get("drop_scratch_tables", True)),
            create_table=bool(config.get("create_table", True)),
            create_indices=bool(config.get("create_indices", True)),
            general_population=bool(config.get("general_population", True)),
            fail_fast=bool(config.get("fail_fast", False)),
            max_acquire_attempts=int(config.get("max_acquire_attempts", 3)),
            thresholds=Thresholds(
                age_warning=thresholds.get("age_warning", 125),
                outpatient_visit_perc=thresholds.get("outpatient_visit_perc", 0.43),
                minimal_pt_meas_dx_rx=thresholds.get("minimal_pt_meas_dx_rx", 20.5),
            ),
            output_folder=config.get("output_folder") or "output",
            verbose=bool(config.get("verbose", True)),
        )

    @property
    def storage_mode(self) -> StorageMode:
        if self.uses_temp_tables:
            return StorageMode.SESSION_SCOPED
        return StorageMode.SHARED_SCRATCH

    @property
    def uses_temp_tables(self) -> bool:
        return self.scratch_database_schema == TEMP_SCHEMA

    @property
    def schema_delim(self) -> str:
        return schema_delim(self.scratch_database_schema)

    @property
    def indices_supported(self) -> bool:
        return self.create_indices and self.dialect in (SQL_SERVER, POSTGRESQL)

    def base_params(self) -> Dict[str, object]:
        """Parameters every template may reference."""
        return {
            "cdmDatabaseSchema": self.cdm_database_schema,
            "resultsDatabaseSchema": self.results_database_schema,
            "scratchDatabaseSchema": self.scratch_database_schema,
            "schemaDelim": self.schema_delim,
            "tempAchillesPrefix": self.temp_achilles_prefix,
            "tempHeelPrefix": self.temp_heel_prefix,
            "source_name": self.source_name,
            "achilles_version": ACHILLES_VERSION,
            "cdmVersion": self.cdm_version,
            "singleThreaded": self.storage_mode is StorageMode.SESSION_SCOPED,
        }


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class RunState(str, Enum):
    INIT = "INIT"
    ANALYSES_RUNNING = "ANALYSES_RUNNING"
    ANALYSES_MERGED = "ANALYSES_MERGED"
    HEEL_A_RUNNING = "HEEL_A_RUNNING"
    HEEL_A_MERGED = "HEEL_A_MERGED"
    HEEL_B_RUNNING = "HEEL_B_RUNNING"
    CLEANUP = "CLEANUP"
    DONE = "DONE"
    FAILED = "FAILED"


VALID_TRANSITIONS: Dict[RunState, Set[RunState]] = {
    RunState.INIT: {RunState.ANALYSES_RUNNING, RunState.HEEL_A_RUNNING, RunState.CLEANUP},
    RunState.ANALYSES_RUNNING: {RunState.ANALYSES_MERGED, RunState.CLEANUP},
    RunState.ANALYSES_MERGED: {RunState.HEEL_A_RUNNING, RunState.CLEANUP},
    RunState.HEEL_A_RUNNING: {RunState.HEEL_A_MERGED, RunState.CLEANUP},
    RunState.HEEL_A_MERGED: {RunState.HEEL_B_RUNNING, RunState.CLEANUP},
    RunState.HEEL_B_RUNNING: {RunState.CLEANUP},
    RunState.CLEANUP: {RunState.DONE, RunState.FAILED},
    RunState.DONE: set(),
    RunState.FAILED: set(),
}

TERMINAL_STATES = {RunState.DONE, RunState.FAILED}


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------


class RunContext:
    """Everything one run shares: settings, state, scratch registry, failures."""

    def __init__(self, settings: RunSettings, token: Optional[CancellationToken] = None):
        self.settings = settings
        self.token = token or CancellationToken()
        self.state = RunState.INIT
        self.history: List[RunState] = [RunState.INIT]
        self.failures: List[StepFailure] = []
        self.cancelled: List[str] = []
        self.cleanup_errors: List[str] = []
        self.sink = None
        self._scratch: List[str] = []
        self._lock = threading.Lock()

    # -- state ---------------------------------------------------------------

    def transition(self, new_state: RunState) -> None:
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)
        self.log(f"state -> {new_state.value}")

    @property
    def failed(self) -> bool:
        return bool(self.failures) or self.token.cancelled

    # -- failures ------------------------------------------------------------

    def record_failures(self, failures) -> None:
        with self._lock:
            self.failures.extend(failures)

    def record_outcomes(self, outcomes) -> None:
        """Keep the failures and the keys of steps cancelled before they started."""
        outcomes = list(outcomes)
        with self._lock:
            self.failures.extend(o.failure for o in outcomes if o.failure is not None)
            self.cancelled.extend(o.key for o in outcomes if o.cancelled)

    # -- scratch tables ------------------------------------------------------

    def register_scratch(self, physical_name: str) -> None:
        with self._lock:
            if physical_name not in self._scratch:
                self._scratch.append(physical_name)

    def forget_scratch(self, physical_name: str) -> None:
        with self._lock:
            if physical_name in self._scratch:
                self._scratch.remove(physical_name)

    @property
    def scratch_tables(self) -> List[str]:
        with self._lock:
            return list(self._scratch)

    # -- output --------------------------------------------------------------

    def begin_file(self, file_name: str) -> None:
        """In SQL-only runs, send the statements that follow to *file_name*."""
        if self.sink is not None:
            self.sink.switch(file_name)

    def log(self, message: str) -> None:
        if self.settings.verbose:
            print(f"[ACHILLES] {message}")
