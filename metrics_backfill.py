"""
Backfill user-scoped marketing metrics (DAU/WAU/MAU, revenue, conversion, retention)
from the marketing data store into the feature sink, one row per feature date.

USAGE:
------
# Use the intervals from config.json:
python metrics_backfill.py

# Override the window parameters the scheduler substitutes:
python metrics_backfill.py --interval-max-date 0 --interval-min-date 0 --interval-end-date 30

# Compute and log the rows without inserting them:
python metrics_backfill.py --dry-run

NOTES:
------
- Every run APPENDS; running the same window twice inserts duplicate rows.
- Window offsets outside the observed event dates fall back to the full history.
"""
import argparse
import logging
import sys
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

import duckdb
from dotenv import load_dotenv

from config_loader import (
    ConfigLoader,
    load_config,
    validate_identifier,
    validate_interval,
)
from date_window import create_dates_interval, resolve_date_window
from logging_utils import configure_logging, release_logging
from metric_aggregates import AGGREGATE_STAGES
from metric_projection import build_feature_rows, fetch_feature_rows, insert_feature_rows
from warehouse import (
    WarehouseRelations,
    attach_projects,
    connect_with_retry,
    register_sql_macros,
)


@dataclass(frozen=True)
class BackfillParams:
    interval_max_date: int
    interval_min_date: int
    interval_end_date: int
    mds_project_id: str
    mds_dataset: str
    project_id: str
    dataset: str
    insert_table: str

    def __post_init__(self):
        for name in ("interval_max_date", "interval_min_date", "interval_end_date"):
            validate_interval(name, getattr(self, name))
        for name in ("mds_project_id", "mds_dataset", "project_id", "dataset", "insert_table"):
            validate_identifier(name, getattr(self, name))

    @classmethod
    def from_config(cls, cfg: ConfigLoader) -> "BackfillParams":
        return cls(
            interval_max_date=cfg.get("intervals.interval_max_date"),
            interval_min_date=cfg.get("intervals.interval_min_date"),
            interval_end_date=cfg.get("intervals.interval_end_date"),
            mds_project_id=cfg.get("warehouse.mds_project_id"),
            mds_dataset=cfg.get("warehouse.mds_dataset"),
            project_id=cfg.get("warehouse.project_id"),
            dataset=cfg.get("warehouse.dataset"),
            insert_table=cfg.get("warehouse.insert_table"),
        )


def run_metrics_backfill(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    params: BackfillParams,
    processed_at: Optional[datetime] = None,
    dry_run: bool = False,
) -> int:
    """
    Resolve the date window, build the five aggregates, project the KPI rows and append
    them to the sink. Returns the number of feature rows computed (and, unless dry_run,
    inserted). Engine errors are logged and re-raised.
    """
    logger.info("--- Starting Metrics Backfill ---")
    relations = WarehouseRelations.from_params(params)
    if processed_at is None:
        processed_at = datetime.now(timezone.utc).replace(tzinfo=None)

    try:
        register_sql_macros(con)

        window = resolve_date_window(
            con,
            relations,
            params.interval_max_date,
            params.interval_min_date,
            params.interval_end_date,
            logger,
        )
        create_dates_interval(con, relations, window, logger)

        for build_stage in AGGREGATE_STAGES:
            build_stage(con, relations, window, logger)

        build_feature_rows(con, window, logger)

        if dry_run:
            rows = fetch_feature_rows(con)
            logger.info(f"Dry run: {len(rows)} feature rows computed, nothing inserted.")
            if not rows.empty:
                logger.info("\n" + rows.to_string(index=False))
            return len(rows)

        inserted = insert_feature_rows(con, relations, processed_at, logger)
        logger.info(f"--- Metrics Backfill Completed: {inserted} rows ---")
        return inserted

    except Exception as e:
        logger.error(f"Metrics backfill failed: {e}", exc_info=True)
        raise


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="metrics-backfill",
        description="Compute user-scoped marketing metrics per feature date",
    )
    p.add_argument("--interval-max-date", type=int, default=None,
                   help="Days subtracted from MAX(event_date) for the last feature date")
    p.add_argument("--interval-min-date", type=int, default=None,
                   help="Days added to MIN(event_date) for the first feature date")
    p.add_argument("--interval-end-date", type=int, default=None,
                   help="Lookback days of each feature date's trailing window")
    p.add_argument("--insert-table", type=str, default=None,
                   help="Sink table inside the configured project and dataset")
    p.add_argument("--dry-run", action="store_true",
                   help="Compute and log the rows without inserting them")
    return p


def params_from_args(cfg: ConfigLoader, args: argparse.Namespace) -> BackfillParams:
    params = BackfillParams.from_config(cfg)
    overrides = {
        "interval_max_date": args.interval_max_date,
        "interval_min_date": args.interval_min_date,
        "interval_end_date": args.interval_end_date,
        "insert_table": args.insert_table,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    return replace(params, **overrides) if overrides else params


def main(argv=None) -> None:
    load_dotenv()
    args = build_parser().parse_args(argv)
    cfg = load_config()
    params = params_from_args(cfg, args)

    logger, _ = configure_logging(
        cfg.run_log_path("metrics_backfill"), logger_name="metrics_backfill"
    )

    con = None
    try:
        con = connect_with_retry(
            cfg.get("database_path"),
            logger,
            retries=cfg.get("connect.retries", 3),
            backoff_seconds=cfg.get("connect.backoff_seconds", 0.5),
        )
        attach_projects(con, cfg.get("warehouse.projects", {}), logger)
        run_metrics_backfill(con, logger, params, dry_run=args.dry_run)
    except Exception as e:
        # The scheduler only observes the exit status
        logger.error(f"Metrics backfill run aborted: {type(e).__name__}: {e}")
        sys.exit(1)
    finally:
        if con is not None:
            con.close()
            logger.info("DuckDB connection closed.")
        release_logging()


if __name__ == "__main__":
    main()
