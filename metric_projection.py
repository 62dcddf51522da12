import logging
from datetime import datetime

import duckdb
import pandas as pd

from date_window import DateWindow
from metric_aggregates import (
    ACTIVE_USERS_TABLE,
    ENGAGEMENT_TABLE,
    FIRST_PURCHASERS_TABLE,
    NEW_USERS_TABLE,
    REVENUE_TABLE,
)
from warehouse import WarehouseRelations

FEATURE_ROWS_TABLE = "feature_rows"

# Sink column order; processed_timestamp is stamped at insert time.
FEATURE_SCHEMA = [
    ("feature_date", "DATE"),
    ("purchasers_users", "BIGINT"),
    ("average_daily_purchasers", "DOUBLE"),
    ("active_users", "BIGINT"),
    ("DAU", "DOUBLE"),
    ("MAU", "DOUBLE"),
    ("WAU", "DOUBLE"),
    ("dau_per_mau", "DOUBLE"),
    ("dau_per_wau", "DOUBLE"),
    ("wau_per_mau", "DOUBLE"),
    ("users_engagement_duration_seconds", "DOUBLE"),
    ("average_engagement_time", "DOUBLE"),
    ("average_engagement_time_per_session", "DOUBLE"),
    ("average_sessions_per_user", "DOUBLE"),
    ("ARPPU", "DOUBLE"),
    ("ARPU", "DOUBLE"),
    ("average_daily_revenue", "DOUBLE"),
    ("max_daily_revenue", "DOUBLE"),
    ("min_daily_revenue", "DOUBLE"),
    ("new_users", "BIGINT"),
    ("returning_users", "BIGINT"),
    ("first_time_purchasers", "BIGINT"),
    ("first_time_purchaser_conversion", "DOUBLE"),
    ("first_time_purchasers_per_new_user", "DOUBLE"),
    ("avg_user_conversion_rate", "DOUBLE"),
    ("avg_session_conversion_rate", "DOUBLE"),
]
SINK_SCHEMA = FEATURE_SCHEMA + [("processed_timestamp", "TIMESTAMP")]

FEATURE_COLUMNS = [name for name, _ in FEATURE_SCHEMA]


def _quoted_columns(columns) -> str:
    return ", ".join(f'"{c}"' for c in columns)


def build_feature_rows(
    con: duckdb.DuckDBPyConnection,
    window: DateWindow,
    logger: logging.Logger,
) -> str:
    """
    Join the five aggregates on feature_date and derive the KPI row.

    Inner joins: a feature date missing from any aggregate produces no row.
    """
    logger.info(f"Building {FEATURE_ROWS_TABLE}...")
    # Average-per-day ratios divide by the configured lookback, not the observed span
    window_days = int(window.lookback_days)

    con.execute(
        f"""
        CREATE OR REPLACE TEMP TABLE {FEATURE_ROWS_TABLE} AS
        WITH per_date AS (
            SELECT
                EA.feature_date,
                COUNT(DISTINCT EA.user_pseudo_id) AS total_users,
                COUNT(DISTINCT CASE WHEN EA.converted_in_session THEN EA.user_pseudo_id END) AS purchasers_users,
                COUNT(DISTINCT CASE WHEN EA.purchase_revenue_in_usd > 0.0 THEN EA.user_pseudo_id END) AS paying_users,
                COUNT(*) AS sessions,
                SUM(CASE WHEN EA.converted_in_session THEN 1 ELSE 0 END) AS converted_sessions,
                CAST(COALESCE(SUM(EA.engagement_time_msec), 0) AS DOUBLE) / 1000.0 AS engagement_seconds,
                COALESCE(SUM(EA.purchase_revenue_in_usd), 0.0) AS session_revenue,
                ANY_VALUE(U.active_users) AS avg_daily_active_users,
                ANY_VALUE(U.weekly_active_users) AS weekly_active_users,
                ANY_VALUE(U.monthly_active_users) AS monthly_active_users,
                ANY_VALUE(R.sum_revenue_per_day) AS sum_revenue_per_day,
                ANY_VALUE(R.max_revenue_per_day) AS max_revenue_per_day,
                ANY_VALUE(R.min_revenue_per_day) AS min_revenue_per_day,
                ANY_VALUE(F.first_time_purchasers) AS first_time_purchasers,
                ANY_VALUE(N.new_users) AS new_users
            FROM {ENGAGEMENT_TABLE} AS EA
            INNER JOIN {ACTIVE_USERS_TABLE} AS U ON U.feature_date = EA.feature_date
            INNER JOIN {REVENUE_TABLE} AS R ON R.feature_date = EA.feature_date
            INNER JOIN {FIRST_PURCHASERS_TABLE} AS F ON F.feature_date = EA.feature_date
            INNER JOIN {NEW_USERS_TABLE} AS N ON N.feature_date = EA.feature_date
            GROUP BY EA.feature_date
        ),
        with_users AS (
            SELECT
                *,
                -- average daily estimate used as a head count from here on
                CAST(COALESCE(avg_daily_active_users, 0) AS BIGINT) AS active_user_count,
                COALESCE(avg_daily_active_users, 0.0) AS dau,
                CAST(COALESCE(weekly_active_users, 0) AS DOUBLE) AS wau,
                CAST(COALESCE(monthly_active_users, 0) AS DOUBLE) AS mau
            FROM per_date
        )
        SELECT
            feature_date,
            COALESCE(purchasers_users, 0) AS purchasers_users,
            COALESCE(safe_divide(purchasers_users, {window_days}), 0.0) AS average_daily_purchasers,
            active_user_count AS active_users,
            dau AS "DAU",
            mau AS "MAU",
            wau AS "WAU",
            COALESCE(safe_divide(dau, mau), 0.0) AS dau_per_mau,
            COALESCE(safe_divide(dau, wau), 0.0) AS dau_per_wau,
            COALESCE(safe_divide(wau, mau), 0.0) AS wau_per_mau,
            engagement_seconds AS users_engagement_duration_seconds,
            COALESCE(safe_divide(engagement_seconds, active_user_count), 0.0) AS average_engagement_time,
            COALESCE(safe_divide(engagement_seconds, sessions), 0.0) AS average_engagement_time_per_session,
            COALESCE(safe_divide(sessions, total_users), 0.0) AS average_sessions_per_user,
            COALESCE(safe_divide(session_revenue, paying_users), 0.0) AS "ARPPU",
            COALESCE(safe_divide(session_revenue, active_user_count), 0.0) AS "ARPU",
            COALESCE(safe_divide(sum_revenue_per_day, {window_days}), 0.0) AS average_daily_revenue,
            COALESCE(max_revenue_per_day, 0.0) AS max_daily_revenue,
            COALESCE(min_revenue_per_day, 0.0) AS min_daily_revenue,
            COALESCE(new_users, 0) AS new_users,
            COALESCE(total_users - new_users, 0) AS returning_users,
            COALESCE(first_time_purchasers, 0) AS first_time_purchasers,
            COALESCE(safe_divide(first_time_purchasers, active_user_count), 0.0) AS first_time_purchaser_conversion,
            COALESCE(safe_divide(first_time_purchasers, new_users), 0.0) AS first_time_purchasers_per_new_user,
            COALESCE(safe_divide(purchasers_users, active_user_count), 0.0) AS avg_user_conversion_rate,
            COALESCE(safe_divide(converted_sessions, sessions), 0.0) AS avg_session_conversion_rate
        FROM with_users
        ORDER BY feature_date;
        """
    )
    n = con.execute(f"SELECT COUNT(*) FROM {FEATURE_ROWS_TABLE}").fetchone()[0]
    logger.info(f"{FEATURE_ROWS_TABLE}: {n} rows")
    return FEATURE_ROWS_TABLE


def fetch_feature_rows(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    return con.execute(
        f"SELECT {_quoted_columns(FEATURE_COLUMNS)} FROM {FEATURE_ROWS_TABLE} ORDER BY feature_date"
    ).df()


def insert_feature_rows(
    con: duckdb.DuckDBPyConnection,
    relations: WarehouseRelations,
    processed_at: datetime,
    logger: logging.Logger,
) -> int:
    """
    Append feature_rows to the sink. Plain INSERT: re-running the same window appends
    a second copy of every row.
    """
    n = con.execute(f"SELECT COUNT(*) FROM {FEATURE_ROWS_TABLE}").fetchone()[0]
    columns = _quoted_columns(FEATURE_COLUMNS)
    con.execute(
        f"""
        INSERT INTO {relations.sink} ({columns}, "processed_timestamp")
        SELECT {columns}, CAST(? AS TIMESTAMP)
        FROM {FEATURE_ROWS_TABLE}
        """,
        [processed_at],
    )
    logger.info(f"Inserted {n} rows into {relations.sink} (processed_timestamp={processed_at})")
    return n
