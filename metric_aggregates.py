"""
Intermediate aggregates for the user-scoped metrics backfill.

Each builder materialises one temp table keyed by feature_date (engagement is also
keyed by user_pseudo_id and session_id) over the trailing windows in dates_interval,
and returns the table name. Only events from devices with a known OS are counted.
"""
import logging

import duckdb

from date_window import DATES_INTERVAL_TABLE, DateWindow
from warehouse import WarehouseRelations

ENGAGEMENT_TABLE = "engagement"
REVENUE_TABLE = "revenue"
ACTIVE_USERS_TABLE = "active_users"
FIRST_PURCHASERS_TABLE = "first_purchasers"
NEW_USERS_TABLE = "new_users"

NOT_SET_TRANSACTION_ID = "(not set)"
PURCHASE_EVENTS = ("purchase", "in_app_purchase")


def _valid_transaction(alias: str = "E") -> str:
    return (
        f"{alias}.ecommerce.transaction_id IS NOT NULL "
        f"AND {alias}.ecommerce.transaction_id <> '{NOT_SET_TRANSACTION_ID}'"
    )


def _windowed_events(relations: WarehouseRelations) -> str:
    """Valid-device events paired with every feature date whose window contains them."""
    return f"""
        FROM {relations.event} AS E
        INNER JOIN {relations.device} AS D
            ON E.device_type_id = D.device_type_id
        CROSS JOIN {DATES_INTERVAL_TABLE} AS DI
        WHERE D.device_os IS NOT NULL
          AND E.event_date BETWEEN DI.end_date AND DI.input_date
    """


def _log_row_count(con, table: str, logger: logging.Logger) -> int:
    n = con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    logger.info(f"{table}: {n} rows")
    return n


def build_engagement(
    con: duckdb.DuckDBPyConnection,
    relations: WarehouseRelations,
    window: DateWindow,
    logger: logging.Logger,
) -> str:
    """Per (user, feature_date, session): engagement, revenue and conversion flags."""
    logger.info(f"Building {ENGAGEMENT_TABLE} for lookback_days={window.lookback_days}...")
    con.execute(
        f"""
        CREATE OR REPLACE TEMP TABLE {ENGAGEMENT_TABLE} AS
        SELECT
            E.user_pseudo_id,
            DI.input_date AS feature_date,
            E.ga_session_id AS session_id,
            MAX(E.engagement_time_msec) AS engagement_time_msec,
            COALESCE(SUM(E.ecommerce.purchase_revenue_in_usd), 0.0) AS purchase_revenue_in_usd,
            BOOL_OR(
                CASE WHEN E.event_name = 'purchase' AND E.ecommerce.transaction_id IS NULL
                     THEN TRUE ELSE FALSE END
            ) AS has_invalid_transactions,
            BOOL_OR(
                CASE WHEN E.event_name = 'purchase'
                      AND E.ga_session_id IS NOT NULL
                      AND {_valid_transaction()}
                     THEN TRUE ELSE FALSE END
            ) AS converted_in_session
        {_windowed_events(relations)}
          AND E.ga_session_id IS NOT NULL
        GROUP BY E.user_pseudo_id, DI.input_date, E.ga_session_id;
        """
    )
    _log_row_count(con, ENGAGEMENT_TABLE, logger)
    return ENGAGEMENT_TABLE


def build_revenue(
    con: duckdb.DuckDBPyConnection,
    relations: WarehouseRelations,
    window: DateWindow,
    logger: logging.Logger,
) -> str:
    """Window total, max and min of the daily valid-transaction revenue per feature date."""
    logger.info(f"Building {REVENUE_TABLE}...")
    con.execute(
        f"""
        CREATE OR REPLACE TEMP TABLE {REVENUE_TABLE} AS
        WITH daily AS (
            SELECT
                DI.input_date AS feature_date,
                E.event_date,
                SUM(COALESCE(E.ecommerce.purchase_revenue_in_usd, 0.0)) AS sum_revenue_per_day
            {_windowed_events(relations)}
              AND E.ga_session_id IS NOT NULL
              AND {_valid_transaction()}
            GROUP BY DI.input_date, E.event_date
        )
        SELECT
            feature_date,
            SUM(sum_revenue_per_day) AS sum_revenue_per_day,
            MAX(sum_revenue_per_day) AS max_revenue_per_day,
            MIN(sum_revenue_per_day) AS min_revenue_per_day
        FROM daily
        GROUP BY feature_date;
        """
    )
    _log_row_count(con, REVENUE_TABLE, logger)
    return REVENUE_TABLE


def build_active_users(
    con: duckdb.DuckDBPyConnection,
    relations: WarehouseRelations,
    window: DateWindow,
    logger: logging.Logger,
) -> str:
    """
    active_users is engaged users divided by the day span of the window's events, i.e. an
    average daily estimate rather than a count. Downstream it is still cast to an integer
    and used as the user denominator; that is kept as-is.
    """
    logger.info(f"Building {ACTIVE_USERS_TABLE}...")
    con.execute(
        f"""
        CREATE OR REPLACE TEMP TABLE {ACTIVE_USERS_TABLE} AS
        SELECT
            DI.input_date AS feature_date,
            safe_divide(
                COUNT(DISTINCT CASE WHEN E.engagement_time_msec > 0 THEN E.user_pseudo_id END),
                DATE_DIFF('day', MIN(E.event_date), MAX(E.event_date))
            ) AS active_users,
            COUNT(DISTINCT CASE WHEN E.engagement_time_msec > 0
                                 AND E.event_date > CAST(DI.input_date - 7 AS DATE)
                                THEN E.user_pseudo_id END) AS weekly_active_users,
            COUNT(DISTINCT CASE WHEN E.engagement_time_msec > 0
                                 AND E.event_date > CAST(DI.input_date - 30 AS DATE)
                                THEN E.user_pseudo_id END) AS monthly_active_users
        {_windowed_events(relations)}
        GROUP BY DI.input_date;
        """
    )
    _log_row_count(con, ACTIVE_USERS_TABLE, logger)
    return ACTIVE_USERS_TABLE


def build_first_purchasers(
    con: duckdb.DuckDBPyConnection,
    relations: WarehouseRelations,
    window: DateWindow,
    logger: logging.Logger,
) -> str:
    """
    Rank purchases across the full history first, then attribute each user's first
    purchase to the windows containing it.
    """
    logger.info(f"Building {FIRST_PURCHASERS_TABLE}...")
    purchase_events = ", ".join(f"'{name}'" for name in PURCHASE_EVENTS)
    con.execute(
        f"""
        CREATE OR REPLACE TEMP TABLE {FIRST_PURCHASERS_TABLE} AS
        WITH ranked_purchases AS (
            SELECT
                E.user_pseudo_id,
                E.event_date,
                RANK() OVER (
                    PARTITION BY E.user_pseudo_id
                    ORDER BY E.event_timestamp ASC
                ) AS purchase_rank
            FROM {relations.event} AS E
            INNER JOIN {relations.device} AS D
                ON E.device_type_id = D.device_type_id
            WHERE E.event_name IN ({purchase_events})
              AND D.device_os IS NOT NULL
        )
        SELECT
            DI.input_date AS feature_date,
            COUNT(DISTINCT P.user_pseudo_id) AS first_time_purchasers
        FROM ranked_purchases AS P
        CROSS JOIN {DATES_INTERVAL_TABLE} AS DI
        WHERE P.purchase_rank = 1
          AND P.event_date BETWEEN DI.end_date AND DI.input_date
        GROUP BY DI.input_date;
        """
    )
    _log_row_count(con, FIRST_PURCHASERS_TABLE, logger)
    return FIRST_PURCHASERS_TABLE


def build_new_users(
    con: duckdb.DuckDBPyConnection,
    relations: WarehouseRelations,
    window: DateWindow,
    logger: logging.Logger,
) -> str:
    """Users whose earliest event inside the window is first_visit."""
    logger.info(f"Building {NEW_USERS_TABLE}...")
    con.execute(
        f"""
        CREATE OR REPLACE TEMP TABLE {NEW_USERS_TABLE} AS
        WITH first_seen AS (
            SELECT
                DI.input_date AS feature_date,
                E.user_pseudo_id,
                E.event_name,
                ROW_NUMBER() OVER (
                    PARTITION BY DI.input_date, E.user_pseudo_id
                    -- first_visit and session_start usually share a timestamp
                    ORDER BY E.event_timestamp ASC,
                             CASE WHEN E.event_name = 'first_visit' THEN 0 ELSE 1 END
                ) AS seen_rank
            {_windowed_events(relations)}
        )
        SELECT
            feature_date,
            COUNT(DISTINCT CASE WHEN event_name = 'first_visit' THEN user_pseudo_id END) AS new_users
        FROM first_seen
        WHERE seen_rank = 1
        GROUP BY feature_date;
        """
    )
    _log_row_count(con, NEW_USERS_TABLE, logger)
    return NEW_USERS_TABLE


AGGREGATE_STAGES = [
    build_engagement,
    build_revenue,
    build_active_users,
    build_first_purchasers,
    build_new_users,
]
