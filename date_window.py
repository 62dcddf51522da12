import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Tuple

import duckdb

from warehouse import WarehouseRelations

DATES_INTERVAL_TABLE = "dates_interval"


@dataclass(frozen=True)
class DateWindow:
    """
    Feature-date bounds for one run, resolved once and passed to every stage.

    min_date/max_date bound the feature dates; each feature date F aggregates the
    trailing window [F - lookback_days, F]. Both bounds are None when the event
    relation is empty.
    """

    min_date: Optional[date]
    max_date: Optional[date]
    observed_min: Optional[date]
    observed_max: Optional[date]
    lookback_days: int
    corrected: bool = False

    @property
    def is_empty(self) -> bool:
        return self.min_date is None or self.max_date is None


def correct_date_bounds(
    observed_min: Optional[date],
    observed_max: Optional[date],
    interval_max_date: int,
    interval_min_date: int,
) -> Tuple[Optional[date], Optional[date], bool]:
    """
    Derive (min_date, max_date, corrected) from the observed event_date range.

    max_date = observed_max - interval_max_date days
    min_date = observed_min + interval_min_date days

    Two fallbacks reset both bounds to the full observed range, applied in order
    even when the first already fired:
      A) min_date >= observed_max, max_date <= observed_min or min_date >= max_date
      B) max_date > observed_max or min_date < observed_min
    """
    if observed_min is None or observed_max is None:
        return None, None, False

    try:
        max_date = observed_max - timedelta(days=interval_max_date)
        min_date = observed_min + timedelta(days=interval_min_date)
    except (OverflowError, ValueError):
        # Offset lands outside the representable date range: out of range by definition
        return observed_min, observed_max, True
    corrected = False

    if min_date >= observed_max or max_date <= observed_min or min_date >= max_date:
        min_date, max_date = observed_min, observed_max
        corrected = True

    if max_date > observed_max or min_date < observed_min:
        min_date, max_date = observed_min, observed_max
        corrected = True

    return min_date, max_date, corrected


def observed_event_date_range(
    con: duckdb.DuckDBPyConnection, relations: WarehouseRelations
) -> Tuple[Optional[date], Optional[date]]:
    row = con.execute(
        f"SELECT MIN(event_date), MAX(event_date) FROM {relations.event}"
    ).fetchone()
    return row[0], row[1]


def resolve_date_window(
    con: duckdb.DuckDBPyConnection,
    relations: WarehouseRelations,
    interval_max_date: int,
    interval_min_date: int,
    interval_end_date: int,
    logger: logging.Logger,
) -> DateWindow:
    observed_min, observed_max = observed_event_date_range(con, relations)
    min_date, max_date, corrected = correct_date_bounds(
        observed_min, observed_max, interval_max_date, interval_min_date
    )

    window = DateWindow(
        min_date=min_date,
        max_date=max_date,
        observed_min=observed_min,
        observed_max=observed_max,
        lookback_days=interval_end_date,
        corrected=corrected,
    )

    if window.is_empty:
        logger.warning(f"No rows in {relations.event}; date window is empty.")
    elif corrected:
        logger.warning(
            f"Window offsets (max={interval_max_date}, min={interval_min_date}) fall outside "
            f"observed range [{observed_min}, {observed_max}]; processing full history."
        )
    logger.info(
        f"Date window: feature dates [{window.min_date}, {window.max_date}], "
        f"lookback_days={window.lookback_days}, corrected={window.corrected}"
    )
    return window


def create_dates_interval(
    con: duckdb.DuckDBPyConnection,
    relations: WarehouseRelations,
    window: DateWindow,
    logger: logging.Logger,
) -> str:
    """
    Materialise one (input_date, end_date) row per distinct event_date inside the window.
    """
    if window.is_empty:
        con.execute(
            f"""
            CREATE OR REPLACE TEMP TABLE {DATES_INTERVAL_TABLE} AS
            SELECT CAST(NULL AS DATE) AS input_date, CAST(NULL AS DATE) AS end_date
            WHERE FALSE;
            """
        )
    else:
        # Bounds are python dates and the lookback a validated int, so literals are safe
        con.execute(
            f"""
            CREATE OR REPLACE TEMP TABLE {DATES_INTERVAL_TABLE} AS
            SELECT DISTINCT
                event_date AS input_date,
                CAST(event_date - {int(window.lookback_days)} AS DATE) AS end_date
            FROM {relations.event}
            WHERE event_date BETWEEN DATE '{window.min_date.isoformat()}'
                                 AND DATE '{window.max_date.isoformat()}'
            ORDER BY input_date DESC;
            """
        )

    n = con.execute(f"SELECT COUNT(*) FROM {DATES_INTERVAL_TABLE}").fetchone()[0]
    logger.info(f"{DATES_INTERVAL_TABLE}: {n} feature dates")
    return DATES_INTERVAL_TABLE
