"""Synthetic OMOP CDM for an end-to-end Achilles demonstration.

Creates a small CDM with deliberate quality issues so that the heel rules
produce a mix of ERROR / WARNING / NOTIFICATION results. The same rows can
be loaded into Spark tables or into any SQLAlchemy database.

Run directly to characterize the synthetic CDM in a local SQLite file::

    python examples/synthetic_demo.py
"""

from datetime import date
from typing import Dict, List, Optional

from pyspark.sql import SparkSession
from pyspark.sql.types import (
    DataType,
    DateType,
    DoubleType,
    IntegerType,
    LongType,
    StringType,
    StructField,
    StructType,
)
from sqlalchemy import BigInteger, Column, Date, Float, Integer, MetaData, String, Table, insert
from sqlalchemy.engine import Engine

# ── CDM table layouts (only the columns the analyses read) ─────────────
CDM_SCHEMAS = {
    "person": StructType(
        [
            StructField("person_id", LongType()),
            StructField("gender_concept_id", LongType()),
            StructField("year_of_birth", IntegerType()),
            StructField("race_concept_id", LongType()),
            StructField("ethnicity_concept_id", LongType()),
        ]
    ),
    "observation_period": StructType(
        [
            StructField("observation_period_id", LongType()),
            StructField("person_id", LongType()),
            StructField("observation_period_start_date", DateType()),
            StructField("observation_period_end_date", DateType()),
            StructField("period_type_concept_id", LongType()),
        ]
    ),
    "visit_occurrence": StructType(
        [
            StructField("visit_occurrence_id", LongType()),
            StructField("person_id", LongType()),
            StructField("visit_concept_id", LongType()),
            StructField("visit_start_date", DateType()),
            StructField("visit_end_date", DateType()),
            StructField("visit_type_concept_id", LongType()),
        ]
    ),
    "condition_occurrence": StructType(
        [
            StructField("condition_occurrence_id", LongType()),
            StructField("person_id", LongType()),
            StructField("condition_concept_id", LongType()),
            StructField("condition_start_date", DateType()),
            StructField("condition_type_concept_id", LongType()),
        ]
    ),
    "drug_exposure": StructType(
        [
            StructField("drug_exposure_id", LongType()),
            StructField("person_id", LongType()),
            StructField("drug_concept_id", LongType()),
            StructField("drug_exposure_start_date", DateType()),
            StructField("drug_type_concept_id", LongType()),
        ]
    ),
    "measurement": StructType(
        [
            StructField("measurement_id", LongType()),
            StructField("person_id", LongType()),
            StructField("measurement_concept_id", LongType()),
            StructField("measurement_date", DateType()),
            StructField("value_as_number", DoubleType()),
        ]
    ),
    "cost": StructType(
        [
            StructField("cost_id", LongType()),
            StructField("cost_event_id", LongType()),
            StructField("cost_domain_id", StringType()),
            StructField("cost_type_concept_id", LongType()),
            StructField("total_charge", DoubleType()),
        ]
    ),
}


def synthetic_rows() -> Dict[str, List[tuple]]:
    """Return rows for every table in ``CDM_SCHEMAS``.

    Deliberate issues seeded for the heel rules:
    - Person 12: gender concept 9999, outside the gender vocabulary
    - Person 11: born in 2090, so ages at first observation go negative
    - Person 10: born in 1875, 135 years old at first observation
    - Person 9: twelve observation periods
    - Conditions: a third are mapped to concept 0
    - Visits: mostly outpatient (9202)
    - Only persons 1 and 2 have a diagnosis, a drug and a measurement
    """
    rows: Dict[str, List[tuple]] = {}

    # ── PERSON ──────────────────────────────────────────────────────────
    births = {1: 1980, 2: 1990, 3: 1975, 4: 2000, 5: 1960, 6: 1985,
              7: 1970, 8: 1995, 9: 1950, 10: 1875, 11: 2090, 12: 1982}
    rows["person"] = [
        (pid, 8507 if pid % 2 else 8532, yob, 8527, 38003563)
        for pid, yob in births.items()
    ]
    rows["person"][-1] = (12, 9999, 1982, 8527, 38003563)

    # ── OBSERVATION_PERIOD ──────────────────────────────────────────────
    op = [
        (pid, pid, date(2010, 1, pid), date(2020, 12, 31), 44814724)
        for pid in births
        if pid != 9
    ]
    op += [
        (100 + i, 9, date(2008 + i, 1, 1), date(2008 + i, 6, 30), 44814724)
        for i in range(12)
    ]
    rows["observation_period"] = op

    # ── VISIT_OCCURRENCE ────────────────────────────────────────────────
    rows["visit_occurrence"] = [
        (i, (i % 12) + 1, 9201 if i % 5 == 0 else 9202,
         date(2015, 1 + i % 12, 1), date(2015, 1 + i % 12, 2), 44818517)
        for i in range(1, 31)
    ]

    # ── CONDITION_OCCURRENCE ────────────────────────────────────────────
    rows["condition_occurrence"] = [
        (i, (i % 6) + 1, 0 if i % 3 == 0 else 201826, date(2016, 1 + i % 12, 10), 32020)
        for i in range(1, 19)
    ]

    # ── DRUG_EXPOSURE ───────────────────────────────────────────────────
    rows["drug_exposure"] = [
        (i, 1 + i % 2, 1503297, date(2016, 2, i), 38000177) for i in range(1, 9)
    ]

    # ── MEASUREMENT ─────────────────────────────────────────────────────
    rows["measurement"] = [
        (i, 1 + i % 2, 3004249, date(2017, 3, i), 120.0 + i) for i in range(1, 7)
    ]

    # ── COST ────────────────────────────────────────────────────────────
    rows["cost"] = [
        (i, i, "Visit" if i % 2 else "Drug", 5031, 100.0 * i) for i in range(1, 9)
    ]
    return rows


def build_synthetic_tables(spark: SparkSession, database: str = "cdm") -> None:
    """Create the synthetic CDM as managed tables in *database*."""
    spark.sql(f"CREATE DATABASE IF NOT EXISTS {database}")
    for name, data in synthetic_rows().items():
        df = spark.createDataFrame(data, schema=CDM_SCHEMAS[name])
        df.write.mode("overwrite").saveAsTable(f"{database}.{name}")


_SQL_TYPES = {
    "bigint": BigInteger,
    "int": Integer,
    "string": String(255),
    "date": Date,
    "double": Float,
}


def _column_type(data_type: DataType):
    return _SQL_TYPES[data_type.simpleString()]


def load_synthetic_cdm(engine: Engine, schema: Optional[str] = None) -> None:
    """Create and fill the synthetic CDM tables through SQLAlchemy."""
    metadata = MetaData(schema=schema)
    tables = {
        name: Table(
            name,
            metadata,
            *[Column(f.name, _column_type(f.dataType)) for f in struct.fields],
        )
        for name, struct in CDM_SCHEMAS.items()
    }
    metadata.drop_all(engine)
    metadata.create_all(engine)
    with engine.begin() as conn:
        for name, data in synthetic_rows().items():
            columns = [f.name for f in CDM_SCHEMAS[name].fields]
            conn.execute(insert(tables[name]), [dict(zip(columns, row)) for row in data])


if __name__ == "__main__":
    import os
    import sys

    REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    if REPO_ROOT not in sys.path:
        sys.path.insert(0, REPO_ROOT)

    from achilles.session import SqlAlchemyConnector
    from achilles.runner import run_achilles
    from reporting.summary import fetch_heel_results, format_summary_text, summarize_heel_results

    connector = SqlAlchemyConnector("sqlite:///achilles_demo.db")
    load_synthetic_cdm(connector.engine)
    result = run_achilles(
        connector,
        config={
            "dialect": "sqlite",
            "cdm_database_schema": "main",
            "results_database_schema": "main",
            "source_name": "Synthetic demo",
            "small_cell_count": 0,
            "run_cost_analysis": True,
        },
    )
    reader = SqlAlchemyConnector("sqlite:///achilles_demo.db")
    session = reader.connect()
    print(format_summary_text(summarize_heel_results(fetch_heel_results(session, "main"))))
    session.close()
    result.raise_for_status()
