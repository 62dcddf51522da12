"""
DuckDB warehouse helpers: project attachment, identifier quoting and SQL macros.

A warehouse "project" is a DuckDB database attached under the project id, a "dataset"
is a schema inside it, so relations are addressed as "project"."dataset"."table".
"""
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import duckdb

from config_loader import validate_identifier

SAFE_DIVIDE_MACRO = """
    CREATE OR REPLACE TEMP MACRO safe_divide(numerator, denominator) AS
        CASE
            WHEN denominator IS NULL OR denominator = 0 THEN NULL
            ELSE CAST(numerator AS DOUBLE) / denominator
        END;
"""


def quote_identifier(name: str, value: str) -> str:
    validate_identifier(name, value)
    return f'"{value}"'


def qualify(project_id: str, dataset: str, table: str) -> str:
    """Return a fully quoted project.dataset.table reference."""
    return ".".join(
        [
            quote_identifier("project_id", project_id),
            quote_identifier("dataset", dataset),
            quote_identifier("table", table),
        ]
    )


@dataclass(frozen=True)
class WarehouseRelations:
    """Quoted names of the source and sink relations for one job run."""

    mds_project_id: str
    mds_dataset: str
    project_id: str
    dataset: str
    insert_table: str

    @classmethod
    def from_params(cls, params) -> "WarehouseRelations":
        return cls(
            mds_project_id=params.mds_project_id,
            mds_dataset=params.mds_dataset,
            project_id=params.project_id,
            dataset=params.dataset,
            insert_table=params.insert_table,
        )

    @property
    def event(self) -> str:
        return qualify(self.mds_project_id, self.mds_dataset, "event")

    @property
    def device(self) -> str:
        return qualify(self.mds_project_id, self.mds_dataset, "device")

    @property
    def sink(self) -> str:
        return qualify(self.project_id, self.dataset, self.insert_table)

    @property
    def mds_schema(self) -> str:
        return ".".join(
            [
                quote_identifier("mds_project_id", self.mds_project_id),
                quote_identifier("mds_dataset", self.mds_dataset),
            ]
        )

    @property
    def sink_schema(self) -> str:
        return ".".join(
            [
                quote_identifier("project_id", self.project_id),
                quote_identifier("dataset", self.dataset),
            ]
        )


def connect_with_retry(
    db_path: str,
    logger: logging.Logger,
    retries: int = 3,
    backoff_seconds: float = 0.5,
) -> duckdb.DuckDBPyConnection:
    """
    Open the main DuckDB database, retrying ONLY transient file lock / permission errors.
    Any other failure is raised immediately.
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    last_err = None
    for attempt in range(retries):
        try:
            return duckdb.connect(database=db_path, read_only=False)
        except (duckdb.IOException, IOError, OSError) as e:
            error_msg = str(e).lower()
            if "lock" not in error_msg and "permission" not in error_msg:
                logger.error(f"DuckDB connect failed with non-retryable IO error: {e}")
                raise
            last_err = e
            logger.warning(f"DuckDB connect failed (attempt {attempt + 1}/{retries}): {e}")
            if attempt < retries - 1:
                time.sleep(backoff_seconds * (2**attempt))

    raise ConnectionError(f"Failed to connect to DuckDB after {retries} attempts: {last_err}")


def attached_databases(con: duckdb.DuckDBPyConnection) -> set:
    rows = con.execute("SELECT database_name FROM duckdb_databases()").fetchall()
    return {r[0] for r in rows}


def attach_projects(
    con: duckdb.DuckDBPyConnection,
    projects: Dict[str, str],
    logger: Optional[logging.Logger] = None,
) -> None:
    """Attach each project database under its project id unless already attached."""
    logger = logger or logging.getLogger(__name__)
    already = attached_databases(con)
    for project_id, db_path in projects.items():
        alias = quote_identifier("project_id", project_id)
        if project_id in already:
            continue
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        path_literal = str(db_path).replace("'", "''")
        con.execute(f"ATTACH '{path_literal}' AS {alias}")
        logger.info(f"Attached project {project_id} from {db_path}")


def register_sql_macros(con: duckdb.DuckDBPyConnection) -> None:
    con.execute(SAFE_DIVIDE_MACRO)
