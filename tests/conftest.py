from datetime import date, datetime, time, timedelta, timezone

import duckdb
import pandas as pd
import pytest

from metrics_backfill import BackfillParams
from setup_database import setup_database
from warehouse import WarehouseRelations, attach_projects, register_sql_macros

BASE_DATE = date(2024, 3, 1)

EVENT_COLUMNS = [
    "user_pseudo_id",
    "event_date",
    "event_timestamp",
    "event_name",
    "ga_session_id",
    "engagement_time_msec",
    "device_type_id",
    "purchase_revenue_in_usd",
    "transaction_id",
]


@pytest.fixture()
def relations():
    return WarehouseRelations(
        mds_project_id="mds_test",
        mds_dataset="mds",
        project_id="analytics_test",
        dataset="feature_store",
        insert_table="user_scoped_metrics",
    )


@pytest.fixture()
def params(relations):
    return BackfillParams(
        interval_max_date=0,
        interval_min_date=0,
        interval_end_date=7,
        mds_project_id=relations.mds_project_id,
        mds_dataset=relations.mds_dataset,
        project_id=relations.project_id,
        dataset=relations.dataset,
        insert_table=relations.insert_table,
    )


@pytest.fixture()
def temp_warehouse(tmp_path, relations):
    """Fresh job database with both projects attached and the schemas created."""
    con = duckdb.connect(str(tmp_path / "metrics_job.db"), read_only=False)
    attach_projects(
        con,
        {
            "mds_test": str(tmp_path / "mds.db"),
            "analytics_test": str(tmp_path / "analytics.db"),
        },
    )
    register_sql_macros(con)
    setup_database(con, relations)
    # device 3 has no OS and must be ignored everywhere
    con.execute(
        f"""
        INSERT INTO {relations.device} (device_type_id, device_category, device_os) VALUES
            (1, 'mobile', 'Android'),
            (2, 'desktop', 'Windows'),
            (3, 'mobile', NULL);
        """
    )
    try:
        yield con
    finally:
        con.close()


@pytest.fixture()
def day():
    def _day(n: int) -> date:
        return BASE_DATE + timedelta(days=n - 1)

    return _day


@pytest.fixture()
def make_event(day):
    """Build one event row; `n` is the 1-based day number, `seconds` the offset within it."""

    def _event(
        user,
        n,
        name,
        seconds=0,
        session=None,
        engagement=None,
        device=1,
        revenue=None,
        transaction_id=None,
    ):
        ts = datetime.combine(day(n), time(), tzinfo=timezone.utc) + timedelta(seconds=seconds)
        return {
            "user_pseudo_id": user,
            "event_date": day(n).isoformat(),
            "event_timestamp": int(ts.timestamp() * 1_000_000),
            "event_name": name,
            "ga_session_id": session,
            "engagement_time_msec": engagement,
            "device_type_id": device,
            "purchase_revenue_in_usd": revenue,
            "transaction_id": transaction_id,
        }

    return _event


@pytest.fixture()
def insert_events():
    def _insert(con: duckdb.DuckDBPyConnection, relations: WarehouseRelations, rows: list):
        df = pd.DataFrame(rows, columns=EVENT_COLUMNS, dtype=object)
        con.register("_events_df", df)
        con.execute(
            f"""
            INSERT INTO {relations.event}
            SELECT
                CAST(user_pseudo_id AS VARCHAR),
                CAST(event_date AS DATE),
                CAST(event_timestamp AS BIGINT),
                CAST(event_name AS VARCHAR),
                CAST(ga_session_id AS BIGINT),
                CAST(engagement_time_msec AS BIGINT),
                CAST(device_type_id AS BIGINT),
                struct_pack(
                    purchase_revenue_in_usd := CAST(purchase_revenue_in_usd AS DOUBLE),
                    transaction_id := CAST(transaction_id AS VARCHAR)
                )
            FROM _events_df
            """
        )
        con.unregister("_events_df")

    return _insert


@pytest.fixture()
def scenario_events(make_event):
    """
    Ten days (1..10), five users:
      u1, u2 - first_visit on day 1
      u3     - engaged day 2, purchases with a valid transaction on day 5
      u4     - engaged days 3-4, purchase without transaction id on day 6
      u5     - engaged every day from 6 to 10
    """
    e = make_event
    rows = [
        e("u1", 1, "first_visit", session=11),
        e("u1", 1, "session_start", session=11),
        e("u1", 1, "user_engagement", seconds=60, session=11, engagement=5000),
        e("u1", 2, "notification_receive"),
        e("u2", 1, "first_visit", seconds=100, session=21),
        e("u2", 1, "user_engagement", seconds=160, session=21, engagement=3000),
        e("u3", 2, "user_engagement", session=31, engagement=4000),
        e("u3", 5, "purchase", session=32, engagement=2000, revenue=50.0, transaction_id="T-1"),
        e("u4", 3, "user_engagement", session=41, engagement=1000),
        e("u4", 4, "user_engagement", session=42, engagement=1000),
        e("u4", 6, "purchase", session=43, engagement=500, revenue=20.0),
    ]
    for n in range(6, 11):
        rows.append(e("u5", n, "user_engagement", session=50 + n, engagement=1000))
    return rows
