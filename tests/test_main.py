import json
import logging

import duckdb
import pytest

from config_loader import ConfigLoader
from metrics_backfill import main
from setup_database import setup_database
from warehouse import attach_projects

RUN_TS = "20240311_060000"


@pytest.fixture()
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    try:
        yield
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in handlers:
            root.addHandler(h)
        root.setLevel(level)


@pytest.fixture()
def job_config(tmp_path, monkeypatch, relations, scenario_events, insert_events, restore_root_logging):
    """Seed the warehouse files, then return a writer that points METRICS_CONFIG at them."""
    projects = {
        relations.mds_project_id: str(tmp_path / "mds.db"),
        relations.project_id: str(tmp_path / "analytics.db"),
    }
    db_path = tmp_path / "metrics_job.db"

    con = duckdb.connect(str(db_path))
    try:
        attach_projects(con, projects)
        setup_database(con, relations)
        con.execute(
            f"""
            INSERT INTO {relations.device} (device_type_id, device_category, device_os) VALUES
                (1, 'mobile', 'Android'),
                (2, 'desktop', 'Windows'),
                (3, 'mobile', NULL);
            """
        )
        insert_events(con, relations, scenario_events)
    finally:
        con.close()

    def _write(insert_table=relations.insert_table):
        cfg = {
            "database_path": str(db_path),
            "paths": {"logs_dir": str(tmp_path / "logs")},
            "connect": {"retries": 1, "backoff_seconds": 0},
            "warehouse": {
                "mds_project_id": relations.mds_project_id,
                "mds_dataset": relations.mds_dataset,
                "project_id": relations.project_id,
                "dataset": relations.dataset,
                "insert_table": insert_table,
                "projects": projects,
            },
            "intervals": {
                "interval_max_date": 0,
                "interval_min_date": 0,
                "interval_end_date": 7,
            },
        }
        path = tmp_path / "config.json"
        path.write_text(json.dumps(cfg))
        monkeypatch.setenv("METRICS_CONFIG", str(path))
        monkeypatch.setenv("RUN_TS", RUN_TS)
        ConfigLoader().reload()
        return tmp_path / "logs" / f"metrics_backfill_{RUN_TS}.log"

    return _write


def _sink_count(tmp_path, relations):
    con = duckdb.connect(str(tmp_path / "analytics.db"))
    try:
        return con.execute(
            f'SELECT COUNT(*) FROM "{relations.dataset}"."{relations.insert_table}"'
        ).fetchone()[0]
    finally:
        con.close()


def test_main_exits_non_zero_when_run_fails(job_config):
    run_log = job_config(insert_table="missing_metrics")

    with pytest.raises(SystemExit) as excinfo:
        main([])

    assert excinfo.value.code == 1
    assert run_log.exists()
    text = run_log.read_text()
    assert "Metrics backfill failed" in text
    assert "Metrics backfill run aborted: CatalogException" in text
    assert "DuckDB connection closed." in text


def test_main_dry_run_returns_normally(job_config, tmp_path, relations):
    run_log = job_config()

    assert main(["--dry-run"]) is None

    text = run_log.read_text()
    assert "Dry run: 6 feature rows computed, nothing inserted." in text
    assert "DuckDB connection closed." in text
    assert _sink_count(tmp_path, relations) == 0


def test_main_appends_feature_rows(job_config, tmp_path, relations):
    run_log = job_config()

    main(["--interval-end-date", "7"])

    assert "Metrics Backfill Completed: 6 rows" in run_log.read_text()
    assert _sink_count(tmp_path, relations) == 6
