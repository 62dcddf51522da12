import logging

import duckdb

from config_loader import load_config
from logging_utils import configure_logging
from metric_projection import SINK_SCHEMA
from warehouse import WarehouseRelations, attach_projects, connect_with_retry

logger = logging.getLogger("setup_database")


def setup_database(con: duckdb.DuckDBPyConnection, relations: WarehouseRelations):
    """
    Create the marketing data store relations (event, device) and the metrics sink
    if they don't exist. Project databases must already be attached.
    """
    con.execute(f"CREATE SCHEMA IF NOT EXISTS {relations.mds_schema};")
    con.execute(f"CREATE SCHEMA IF NOT EXISTS {relations.sink_schema};")

    # Clickstream facts - APPEND-ONLY, produced upstream (no key, duplicates possible)
    con.execute(
        f"""
    CREATE TABLE IF NOT EXISTS {relations.event} (
        user_pseudo_id VARCHAR,
        event_date DATE,
        event_timestamp BIGINT,          -- microseconds since epoch
        event_name VARCHAR,
        ga_session_id BIGINT,
        engagement_time_msec BIGINT,
        device_type_id BIGINT,
        ecommerce STRUCT(
            purchase_revenue_in_usd DOUBLE,
            transaction_id VARCHAR
        )
    );
    """
    )
    logger.info(f"Table {relations.event} is set up (append-only).")

    con.execute(
        f"""
    CREATE TABLE IF NOT EXISTS {relations.device} (
        device_type_id BIGINT PRIMARY KEY,
        device_category VARCHAR,
        device_os VARCHAR               -- NULL = unknown device, excluded from metrics
    );
    """
    )
    logger.info(f"Table {relations.device} is set up.")

    # Metrics sink - insert-only, no merge key (reruns append duplicates)
    columns = ",\n        ".join(f'"{name}" {sql_type}' for name, sql_type in SINK_SCHEMA)
    con.execute(
        f"""
    CREATE TABLE IF NOT EXISTS {relations.sink} (
        {columns}
    );
    """
    )
    logger.info(f"Sink table {relations.sink} is set up.")


if __name__ == "__main__":
    cfg = load_config()
    configure_logging(cfg.run_log_path("setup_database"))

    logger.info("--- Starting Database Setup ---")
    relations = WarehouseRelations(
        mds_project_id=cfg.get("warehouse.mds_project_id"),
        mds_dataset=cfg.get("warehouse.mds_dataset"),
        project_id=cfg.get("warehouse.project_id"),
        dataset=cfg.get("warehouse.dataset"),
        insert_table=cfg.get("warehouse.insert_table"),
    )
    con = connect_with_retry(cfg.get("database_path"), logger)
    try:
        attach_projects(con, cfg.get("warehouse.projects", {}), logger)
        setup_database(con, relations)
    finally:
        con.close()
    logger.info("--- Database Setup Finished ---")
