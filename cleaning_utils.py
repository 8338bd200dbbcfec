from __future__ import annotations

from datetime import datetime, time
from typing import Dict, List, Mapping, Optional
import logging
import numbers
import re

import pandas as pd

from config import EngineConfig
from scheduling_core import (
    Classification,
    Equipment,
    OperatingDay,
    Product,
    ProductionLine,
    RunStatus,
    ScheduledRun,
    ScheduleSnapshot,
    default_operating_calendar,
)

logger = logging.getLogger(__name__)

# NOTE: This module is the "input normalization" layer: workbook/frames -> ScheduleSnapshot.
# Keep scheduling logic out of here.

SHEETS = ("Equipment", "Products", "ProcessingTimes", "Lines", "OperatingHours", "Runs")

CLASSIFICATION_ALIASES = {
    "TOPSELLER": Classification.TOP_SELLER,
    "TOP": Classification.TOP_SELLER,
    "NORMAL": Classification.NORMAL,
}

STATUS_ALIASES = {
    "PENDING": RunStatus.PENDING,
    "PENDENTE": RunStatus.PENDING,
    "INPROGRESS": RunStatus.IN_PROGRESS,
    "EMPROGRESSO": RunStatus.IN_PROGRESS,
    "COMPLETED": RunStatus.COMPLETED,
    "CONCLUIDO": RunStatus.COMPLETED,
    "CONCLUÍDO": RunStatus.COMPLETED,
    "CANCELLED": RunStatus.CANCELLED,
    "CANCELED": RunStatus.CANCELLED,
    "CANCELADO": RunStatus.CANCELLED,
}


def _key(v) -> str:
    return re.sub(r"[\s_\-]+", "", str(v).strip().upper())


def normalize_classification(v) -> Classification:
    """Maps 'Top Seller' / 'TopSeller' / 'TOP_SELLER' / 'Normal'. Blank -> Normal."""
    if v is None or (not isinstance(v, str) and pd.isna(v)):
        return Classification.NORMAL
    k = _key(v)
    if not k:
        return Classification.NORMAL
    if k not in CLASSIFICATION_ALIASES:
        raise ValueError(f"Unknown classification: {v!r}")
    return CLASSIFICATION_ALIASES[k]


def normalize_status(v) -> RunStatus:
    """English or Portuguese status label. Blank -> Pending."""
    if v is None or (not isinstance(v, str) and pd.isna(v)):
        return RunStatus.PENDING
    k = _key(v)
    if not k:
        return RunStatus.PENDING
    if k not in STATUS_ALIASES:
        raise ValueError(f"Unknown run status: {v!r}")
    return STATUS_ALIASES[k]


def parse_time_of_day(v) -> time:
    """'08:00', '8:00:00', datetime.time, datetime, or an Excel day fraction."""
    if isinstance(v, time):
        return v.replace(second=0, microsecond=0)
    if isinstance(v, datetime):
        return v.time().replace(second=0, microsecond=0)
    if isinstance(v, numbers.Number) and not isinstance(v, bool) and not pd.isna(v):
        minutes = int(round(float(v) * 24 * 60))
        return time(minutes // 60, minutes % 60)
    s = str(v).strip()
    m = re.fullmatch(r"(\d{1,2}):(\d{2})(?::\d{2})?", s)
    if not m:
        raise ValueError(f"Not a time of day: {v!r}")
    return time(int(m.group(1)), int(m.group(2)))


def parse_bool(v) -> bool:
    if isinstance(v, bool):
        return v
    if v is None or (not isinstance(v, str) and pd.isna(v)):
        return False
    if isinstance(v, numbers.Number):
        return bool(v)
    return str(v).strip().upper() in {"1", "TRUE", "YES", "Y", "X", "SIM"}


def split_ids(v) -> List[str]:
    """'EQ1, EQ2;EQ3' -> ['EQ1', 'EQ2', 'EQ3'] keeping order."""
    if v is None or (not isinstance(v, str) and pd.isna(v)):
        return []
    return [p.strip() for p in re.split(r"[,;]", str(v)) if p.strip()]


def _clean_id(v) -> str:
    if v is None or (not isinstance(v, str) and pd.isna(v)):
        return ""
    return re.sub(r"\.0$", "", str(v).strip())


def _text(v, default: str = "") -> str:
    if v is None or (not isinstance(v, str) and pd.isna(v)):
        return default
    return str(v).strip()


def find_col(df: pd.DataFrame, candidates: list[str]) -> str:
    """Find a column name in df.columns given candidate names.

    Tries exact (case-insensitive) match first, then substring match.
    """
    cand_lower = [c.lower() for c in candidates]
    for c in df.columns:
        if str(c).lower() in cand_lower:
            return c
    for c in df.columns:
        cl = str(c).lower()
        for cand in cand_lower:
            if cand in cl:
                return c
    raise KeyError(f"Could not find any of: {candidates}")


def find_col_optional(df: pd.DataFrame, candidates: list[str]) -> Optional[str]:
    try:
        return find_col(df, candidates)
    except KeyError:
        return None


def _get(row: pd.Series, col: Optional[str], default=None):
    if col is None:
        return default
    return row[col]


# ----------------------------
# Frame -> entity conversion
# ----------------------------

def equipment_from_frame(df: pd.DataFrame) -> List[Equipment]:
    id_col = find_col(df, ["id", "equipment_id"])
    name_col = find_col_optional(df, ["name"])
    type_col = find_col_optional(df, ["type"])
    out: List[Equipment] = []
    for _, r in df.iterrows():
        eq_id = _clean_id(r[id_col])
        if not eq_id:
            continue
        out.append(Equipment(
            id=eq_id,
            name=_text(_get(r, name_col), eq_id),
            type=_text(_get(r, type_col)),
        ))
    return out


def processing_times_from_frame(df: Optional[pd.DataFrame]) -> Dict[str, Dict[str, float]]:
    """product id -> {equipment id: minutes per unit}, in row order."""
    out: Dict[str, Dict[str, float]] = {}
    if df is None or df.empty:
        return out
    prod_col = find_col(df, ["product_id", "product"])
    eq_col = find_col(df, ["equipment_id", "equipment"])
    min_col = find_col(df, ["minutes_per_unit", "time_per_unit_minutes", "minutes"])
    minutes = pd.to_numeric(df[min_col], errors="coerce").fillna(0.0)
    for idx, r in df.iterrows():
        pid = _clean_id(r[prod_col])
        eid = _clean_id(r[eq_col])
        if not pid or not eid:
            continue
        out.setdefault(pid, {})[eid] = max(0.0, float(minutes[idx]))
    return out


def products_from_frame(
    df: pd.DataFrame,
    processing_times: Mapping[str, Dict[str, float]],
) -> List[Product]:
    id_col = find_col(df, ["id", "product_id"])
    name_col = find_col_optional(df, ["name"])
    cls_col = find_col_optional(df, ["classification", "class"])
    sku_col = find_col_optional(df, ["sku"])
    out: List[Product] = []
    for _, r in df.iterrows():
        pid = _clean_id(r[id_col])
        if not pid:
            continue
        out.append(Product(
            id=pid,
            name=_text(_get(r, name_col), pid),
            classification=normalize_classification(_get(r, cls_col)),
            processing_times=dict(processing_times.get(pid, {})),
            sku=_text(_get(r, sku_col)),
        ))
    return out


def operating_hours_from_frame(df: Optional[pd.DataFrame]) -> Dict[str, List[OperatingDay]]:
    out: Dict[str, List[OperatingDay]] = {}
    if df is None or df.empty:
        return out
    line_col = find_col(df, ["line_id", "line"])
    dow_col = find_col(df, ["day_of_week", "weekday", "day"])
    active_col = find_col(df, ["active", "is_active"])
    start_col = find_col(df, ["start", "start_time"])
    end_col = find_col(df, ["end", "end_time"])
    for _, r in df.iterrows():
        lid = _clean_id(r[line_col])
        if not lid:
            continue
        active = parse_bool(r[active_col])
        start = parse_time_of_day(r[start_col]) if active or pd.notna(r[start_col]) else time(0, 0)
        end = parse_time_of_day(r[end_col]) if active or pd.notna(r[end_col]) else time(0, 0)
        out.setdefault(lid, []).append(OperatingDay(
            day_of_week=int(r[dow_col]),
            active=active,
            start=start,
            end=end,
        ))
    return out


def _complete_calendar(days: List[OperatingDay], config: EngineConfig) -> tuple[OperatingDay, ...]:
    """Days missing from the sheet are filled in as inactive."""
    by_dow = {od.day_of_week: od for od in days}
    return tuple(
        by_dow.get(i, OperatingDay(i, active=False, start=config.window_start, end=config.window_end))
        for i in range(7)
    )


def lines_from_frame(
    df: pd.DataFrame,
    operating_hours: Mapping[str, List[OperatingDay]],
    *,
    config: EngineConfig = EngineConfig(),
) -> List[ProductionLine]:
    id_col = find_col(df, ["id", "line_id"])
    name_col = find_col_optional(df, ["name"])
    eq_col = find_col_optional(df, ["equipment_ids", "equipment"])
    desc_col = find_col_optional(df, ["description"])
    out: List[ProductionLine] = []
    for _, r in df.iterrows():
        lid = _clean_id(r[id_col])
        if not lid:
            continue
        if lid in operating_hours:
            hours = _complete_calendar(operating_hours[lid], config)
        else:
            logger.debug("Line %s has no operating hours; using the default calendar", lid)
            hours = default_operating_calendar(config.window_start, config.window_end, config.active_days)
        out.append(ProductionLine(
            id=lid,
            name=_text(_get(r, name_col), lid),
            equipment_ids=tuple(split_ids(_get(r, eq_col))),
            operating_hours=hours,
            description=_text(_get(r, desc_col)),
        ))
    return out


def runs_from_frame(df: pd.DataFrame) -> List[ScheduledRun]:
    id_col = find_col(df, ["id", "run_id"])
    prod_col = find_col(df, ["product_id", "product"])
    line_col = find_col(df, ["line_id", "line"])
    start_col = find_col(df, ["start", "start_time"])
    end_col = find_col(df, ["end", "end_time"])
    qty_col = find_col(df, ["quantity", "qty"])
    status_col = find_col_optional(df, ["status"])
    notes_col = find_col_optional(df, ["notes", "note"])

    starts = pd.to_datetime(df[start_col], errors="coerce")
    ends = pd.to_datetime(df[end_col], errors="coerce")
    qtys = pd.to_numeric(df[qty_col], errors="coerce").fillna(0).astype(int)

    out: List[ScheduledRun] = []
    for idx, r in df.iterrows():
        rid = _clean_id(r[id_col])
        if not rid:
            continue
        if pd.isna(starts[idx]) or pd.isna(ends[idx]):
            raise ValueError(f"Run {rid}: start and end are required.")
        out.append(ScheduledRun(
            id=rid,
            product_id=_clean_id(r[prod_col]),
            line_id=_clean_id(r[line_col]),
            start=starts[idx].to_pydatetime(),
            end=ends[idx].to_pydatetime(),
            quantity=int(qtys[idx]),
            status=normalize_status(_get(r, status_col)),
            notes=_text(_get(r, notes_col)),
        ))
    return out


def snapshot_from_frames(
    frames: Mapping[str, pd.DataFrame],
    *,
    config: EngineConfig = EngineConfig(),
) -> ScheduleSnapshot:
    """Build a snapshot from one DataFrame per sheet (see SHEETS)."""
    for required in ("Products", "Lines", "Runs"):
        if required not in frames:
            raise KeyError(f"Missing sheet: {required}")

    eq_df = frames.get("Equipment")
    equipment = equipment_from_frame(eq_df) if eq_df is not None and not eq_df.empty else []
    processing = processing_times_from_frame(frames.get("ProcessingTimes"))
    products = products_from_frame(frames["Products"], processing)
    hours = operating_hours_from_frame(frames.get("OperatingHours"))
    lines = lines_from_frame(frames["Lines"], hours, config=config)
    runs = runs_from_frame(frames["Runs"])

    logger.info(
        "Loaded %d equipment, %d products, %d lines, %d runs",
        len(equipment), len(products), len(lines), len(runs),
    )
    return ScheduleSnapshot(equipment=equipment, products=products, lines=lines, runs=runs)


def load_and_clean(xlsx_path, *, config: EngineConfig = EngineConfig()) -> ScheduleSnapshot:
    """Load a scheduling workbook (one sheet per entity) into a snapshot."""
    raw = pd.read_excel(xlsx_path, sheet_name=None)
    frames: Dict[str, pd.DataFrame] = {}
    for name, df in raw.items():
        df.columns = [str(c).strip() for c in df.columns]
        frames[str(name).strip()] = df
    return snapshot_from_frames(frames, config=config)
