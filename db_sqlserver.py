# db_sqlserver.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Tuple
import json
import logging

import pandas as pd
import pyodbc

from cleaning_utils import normalize_classification, normalize_status, parse_time_of_day
from scheduling_core import (
    Equipment,
    OperatingDay,
    PersistenceFailure,
    Product,
    ProductionLine,
    ScheduledRun,
    ScheduleSnapshot,
    default_operating_calendar,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SqlServerConfig:
    driver: str = "ODBC Driver 17 for SQL Server"
    server: str = "localhost"
    database: str = "ProductionScheduling"
    trusted_connection: bool = True

    def conn_str(self) -> str:
        parts = [
            f"DRIVER={{{self.driver}}};",
            f"SERVER={self.server};",
            f"DATABASE={self.database};",
        ]
        if self.trusted_connection:
            parts.append("Trusted_Connection=yes;")
        return "".join(parts)


SELECT_EQUIPMENT_SQL = "SELECT id, name, type FROM dbo.equipment ORDER BY name;"
SELECT_PRODUCTS_SQL = "SELECT id, name, sku, classification, processing_times FROM dbo.products ORDER BY name;"
SELECT_LINES_SQL = (
    "SELECT id, name, description, equipment_ids, operating_hours FROM dbo.production_lines ORDER BY name;"
)
SELECT_RUNS_SQL = """
    SELECT id, product_id, line_id, start_time, end_time, quantity, notes, status
    FROM dbo.scheduled_production_runs
    ORDER BY start_time;
"""

UPDATE_RUN_SQL = """
    UPDATE dbo.scheduled_production_runs
    SET product_id = ?, line_id = ?, start_time = ?, end_time = ?,
        quantity = ?, notes = ?, status = ?, updated_at = SYSDATETIME()
    WHERE id = ?;
"""


# ----------------------------
# Row mapping (snake_case columns <-> entities)
# ----------------------------

def _json(v, default):
    if v is None or (not isinstance(v, (str, bytes, list, dict)) and pd.isna(v)):
        return default
    if isinstance(v, (list, dict)):
        return v
    s = v.decode("utf-8") if isinstance(v, bytes) else str(v)
    return json.loads(s) if s.strip() else default


def equipment_from_row(row: Dict[str, Any]) -> Equipment:
    return Equipment(id=str(row["id"]), name=str(row.get("name") or ""), type=str(row.get("type") or ""))


def product_from_row(row: Dict[str, Any]) -> Product:
    """processing_times column: JSON [{"equipmentId": ..., "timePerUnitMinutes": ...}]"""
    profile: Dict[str, float] = {}
    for pt in _json(row.get("processing_times"), []):
        eq_id = str(pt.get("equipmentId", "")).strip()
        if eq_id:
            profile[eq_id] = max(0.0, float(pt.get("timePerUnitMinutes") or 0.0))
    return Product(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        classification=normalize_classification(row.get("classification")),
        processing_times=profile,
        sku=str(row.get("sku") or ""),
    )


def operating_day_from_json(d: Dict[str, Any]) -> OperatingDay:
    return OperatingDay(
        day_of_week=int(d["dayOfWeek"]),
        active=bool(d.get("isActive", False)),
        start=parse_time_of_day(d.get("startTime") or "00:00"),
        end=parse_time_of_day(d.get("endTime") or "00:00"),
    )


def line_from_row(row: Dict[str, Any]) -> ProductionLine:
    hours = [operating_day_from_json(d) for d in _json(row.get("operating_hours"), [])]
    return ProductionLine(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        equipment_ids=tuple(str(e) for e in _json(row.get("equipment_ids"), [])),
        operating_hours=tuple(sorted(hours, key=lambda od: od.day_of_week)) or default_operating_calendar(),
        description=str(row.get("description") or ""),
    )


def _as_datetime(v) -> datetime:
    return pd.to_datetime(v).to_pydatetime()


def run_from_row(row: Dict[str, Any]) -> ScheduledRun:
    return ScheduledRun(
        id=str(row["id"]),
        product_id=str(row["product_id"]),
        line_id=str(row["line_id"]),
        start=_as_datetime(row["start_time"]),
        end=_as_datetime(row["end_time"]),
        quantity=int(row["quantity"]),
        status=normalize_status(row.get("status")),
        notes=str(row.get("notes") or ""),
    )


def run_to_params(run: ScheduledRun) -> Tuple[Any, ...]:
    """Parameters for UPDATE_RUN_SQL, in placeholder order."""
    return (
        run.product_id,
        run.line_id,
        run.start,
        run.end,
        int(run.quantity),
        run.notes or None,
        run.status.value,
        run.id,
    )


def _fetch_dicts(cur, sql: str) -> List[Dict[str, Any]]:
    cur.execute(sql)
    cols = [c[0] for c in cur.description]
    return [dict(zip(cols, r)) for r in cur.fetchall()]


def read_snapshot(conn_str: str) -> ScheduleSnapshot:
    with pyodbc.connect(conn_str) as cn:
        cur = cn.cursor()
        try:
            eq_rows = _fetch_dicts(cur, SELECT_EQUIPMENT_SQL)
            prod_rows = _fetch_dicts(cur, SELECT_PRODUCTS_SQL)
            line_rows = _fetch_dicts(cur, SELECT_LINES_SQL)
            run_rows = _fetch_dicts(cur, SELECT_RUNS_SQL)
        finally:
            cur.close()

    return ScheduleSnapshot(
        equipment=[equipment_from_row(r) for r in eq_rows],
        products=[product_from_row(r) for r in prod_rows],
        lines=[line_from_row(r) for r in line_rows],
        runs=[run_from_row(r) for r in run_rows],
    )


def update_run(conn_str: str, run: ScheduledRun) -> None:
    """UPDATE one run in its own transaction. Raises PersistenceFailure."""
    try:
        with pyodbc.connect(conn_str) as conn:
            conn.autocommit = False
            cur = conn.cursor()
            try:
                cur.execute(UPDATE_RUN_SQL, run_to_params(run))
                if cur.rowcount == 0:
                    conn.rollback()
                    raise PersistenceFailure(f"Run {run.id} not found in database.", run_id=run.id)
                conn.commit()
            except pyodbc.Error:
                conn.rollback()
                raise
            finally:
                cur.close()
    except pyodbc.Error as e:
        raise PersistenceFailure(f"Could not update run {run.id}: {e}", run_id=run.id) from e


class SqlServerRunStore:
    """RunStore backed by the scheduling tables in SQL Server."""

    def __init__(self, config: SqlServerConfig):
        self.config = config

    def load_snapshot(self) -> ScheduleSnapshot:
        return read_snapshot(self.config.conn_str())

    def commit_run(self, run: ScheduledRun) -> ScheduledRun:
        update_run(self.config.conn_str(), run)
        logger.debug("Committed run %s (%s %s-%s)", run.id, run.line_id, run.start, run.end)
        return run
