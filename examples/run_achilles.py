# Databricks notebook source
# MAGIC %md
# MAGIC # Achilles: Entrypoint Notebook
# MAGIC
# MAGIC This notebook characterizes an OMOP CDM database with the Achilles
# MAGIC analyses and runs the Heel data quality rules over the results.
# MAGIC Adjust the schemas and optional config overrides below to match your
# MAGIC environment.

# COMMAND ----------

import sys, os

# Add the repo root to the Python path so imports resolve.
# In Databricks Repos this is automatic; adjust if running locally.
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

# COMMAND ----------

from pyspark.sql import SparkSession
from achilles.runner import run_achilles
from achilles.session import SparkConnector

spark = SparkSession.builder.getOrCreate()

# COMMAND ----------

# ── 1. Point at your CDM ────────────────────────────────────────────────
# Replace with the databases holding your CDM, results and scratch tables
# (Unity Catalog names such as "main.omop" work too).
#
#   CDM_SCHEMA = "omop"
#   RESULTS_SCHEMA = "omop_results"
#   SCRATCH_SCHEMA = "omop_scratch"

# For demo purposes, build the synthetic CDM instead:
from examples.synthetic_demo import build_synthetic_tables

CDM_SCHEMA = "achilles_demo_cdm"
RESULTS_SCHEMA = "achilles_demo_results"
SCRATCH_SCHEMA = "achilles_demo_scratch"

build_synthetic_tables(spark, CDM_SCHEMA)
for db in (RESULTS_SCHEMA, SCRATCH_SCHEMA):
    spark.sql(f"CREATE DATABASE IF NOT EXISTS {db}")

# COMMAND ----------

# ── 2. (Optional) Override default configuration ────────────────────────
config = {
    "dialect": "spark",
    "cdm_database_schema": CDM_SCHEMA,
    "results_database_schema": RESULTS_SCHEMA,
    # A real scratch schema lets the analyses run on several sessions;
    # use "#" to run everything on one session with temp views.
    "scratch_database_schema": SCRATCH_SCHEMA,
    "num_threads": 4,
    "source_name": "Synthetic demo",
    # The synthetic CDM is tiny; keep every count.
    "small_cell_count": 0,
    "run_cost_analysis": True,
    # Write the SQL to output/v5/ instead of running it (uncomment to enable):
    # "sql_only": True,
}

# COMMAND ----------

# ── 3. Run Achilles ─────────────────────────────────────────────────────
result = run_achilles(SparkConnector(spark), config=config)

# COMMAND ----------

# ── 4. Inspect results ──────────────────────────────────────────────────
# Failed steps, if any
for failure in result.failures:
    print(failure.describe())

# COMMAND ----------

# Heel summary by rule and severity
from reporting.summary import fetch_heel_results, format_summary_text, summarize_heel_results

session = SparkConnector(spark).connect()
print(format_summary_text(summarize_heel_results(fetch_heel_results(session, RESULTS_SCHEMA))))

# COMMAND ----------

# Person counts by gender
display(spark.table(f"{RESULTS_SCHEMA}.achilles_results").filter("analysis_id = 2"))
