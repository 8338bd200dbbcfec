from __future__ import annotations

import pandas as pd
from pathlib import Path
from datetime import date, datetime
from typing import Any, Dict, List, Optional
import json

from scheduling_core import (
    DAY_NAMES,
    DayOptimization,
    ScheduledRun,
    ScheduleSnapshot,
    day_of_week,
    hhmm,
    is_locked,
    lock_reason,
)


def runs_to_df(runs: List[ScheduledRun]) -> pd.DataFrame:
    return pd.DataFrame([{
        "id": r.id,
        "product_id": r.product_id,
        "line_id": r.line_id,
        "start": r.start,
        "end": r.end,
        "quantity": int(r.quantity),
        "status": r.status.value,
        "notes": r.notes,
    } for r in runs], columns=["id", "product_id", "line_id", "start", "end", "quantity", "status", "notes"])


def placements_to_df(snapshot: ScheduleSnapshot, result: DayOptimization) -> pd.DataFrame:
    rows = []
    for p in result.placements.values():
        before = snapshot.run(p.run_id)
        product = snapshot.product(before.product_id) if before is not None else None
        rows.append({
            "RUN_ID": p.run_id,
            "PRODUCT": product.name if product is not None else "",
            "LINE_ID": p.line_id,
            "OLD_START": before.start if before is not None else None,
            "OLD_END": before.end if before is not None else None,
            "NEW_START": p.start,
            "NEW_END": p.end,
        })
    return pd.DataFrame(rows, columns=["RUN_ID", "PRODUCT", "LINE_ID", "OLD_START", "OLD_END", "NEW_START", "NEW_END"])


def write_excel(out_path, snapshot: ScheduleSnapshot, result: DayOptimization) -> None:
    """Optimizer pass report: summary, relocations and the decision trace."""
    summary = pd.DataFrame([
        {"Metric": "Day", "Value": result.day.isoformat()},
        {"Metric": "Relocated", "Value": result.relocated_count},
        {"Metric": "Unchanged", "Value": result.unchanged_count},
        {"Metric": "Unoptimized", "Value": result.unoptimized_count},
    ])
    trace = pd.DataFrame({"Step": range(1, len(result.trace) + 1), "Decision": result.trace})
    notes = pd.DataFrame([
        {"Note": "Top Seller runs and runs that are no longer Pending are never moved."},
        {"Note": "Pending Normal runs are packed into the earliest free slot inside the line's operating hours, in order of their previous start."},
        {"Note": "Relocations are committed one run at a time."},
    ])

    with pd.ExcelWriter(out_path, engine="openpyxl") as xw:
        summary.to_excel(xw, index=False, sheet_name="Summary")
        placements_to_df(snapshot, result).to_excel(xw, index=False, sheet_name="Placements")
        trace.to_excel(xw, index=False, sheet_name="Trace")
        notes.to_excel(xw, index=False, sheet_name="Notes")


def write_snapshot_excel(out_path, snapshot: ScheduleSnapshot) -> None:
    """Write a snapshot back in the workbook layout cleaning_utils.load_and_clean reads."""
    equipment = pd.DataFrame(
        [{"id": e.id, "name": e.name, "type": e.type} for e in snapshot.equipment],
        columns=["id", "name", "type"],
    )
    products = pd.DataFrame(
        [{"id": p.id, "name": p.name, "sku": p.sku, "classification": p.classification.value}
         for p in snapshot.products],
        columns=["id", "name", "sku", "classification"],
    )
    processing = pd.DataFrame(
        [{"product_id": p.id, "equipment_id": eq, "minutes_per_unit": m}
         for p in snapshot.products for eq, m in p.processing_times.items()],
        columns=["product_id", "equipment_id", "minutes_per_unit"],
    )
    lines = pd.DataFrame(
        [{"id": ln.id, "name": ln.name, "description": ln.description,
          "equipment_ids": ", ".join(ln.equipment_ids)} for ln in snapshot.lines],
        columns=["id", "name", "description", "equipment_ids"],
    )
    hours = pd.DataFrame(
        [{"line_id": ln.id, "day_of_week": od.day_of_week, "active": od.active,
          "start": hhmm(od.start), "end": hhmm(od.end)}
         for ln in snapshot.lines for od in ln.operating_hours],
        columns=["line_id", "day_of_week", "active", "start", "end"],
    )

    with pd.ExcelWriter(out_path, engine="openpyxl") as xw:
        equipment.to_excel(xw, index=False, sheet_name="Equipment")
        products.to_excel(xw, index=False, sheet_name="Products")
        processing.to_excel(xw, index=False, sheet_name="ProcessingTimes")
        lines.to_excel(xw, index=False, sheet_name="Lines")
        hours.to_excel(xw, index=False, sheet_name="OperatingHours")
        runs_to_df(list(snapshot.runs)).to_excel(xw, index=False, sheet_name="Runs")


def timeline_payload(
    snapshot: ScheduleSnapshot,
    day: date,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Day view for a Gantt renderer: one group per line with runs that day."""
    now = now or datetime.now()
    runs = snapshot.runs_starting_on(day)

    groups: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for r in runs:
        if r.line_id in seen:
            continue
        seen.add(r.line_id)
        line = snapshot.line(r.line_id)
        window = line.window_for(day) if line is not None else None
        groups.append({
            "id": r.line_id,
            "label": line.name if line is not None else r.line_id,
            "operating_window": (
                {"start": window[0].isoformat(), "end": window[1].isoformat()} if window else None
            ),
        })

    items = []
    for r in runs:
        product = snapshot.product(r.product_id)
        locked = is_locked(r, product)
        items.append({
            "id": r.id,
            "group": r.line_id,
            "start": r.start.isoformat(),
            "end": r.end.isoformat(),
            "label": product.name if product is not None else "Unknown product",
            "data": {
                "product_id": r.product_id,
                "classification": product.classification.value if product is not None else None,
                "status": r.status.value,
                "quantity": int(r.quantity),
                "locked": locked,
                "lock_reason": lock_reason(r, product) if locked else None,
                "notes": r.notes,
            },
        })

    return {
        "meta": {
            "generated_at": datetime.now().isoformat(timespec="seconds"),
            "day": day.isoformat(),
            "weekday": DAY_NAMES[day_of_week(day)],
            "now": now.isoformat(timespec="seconds") if now.date() == day else None,
            "segment_count": len(items),
        },
        "groups": groups,
        "items": items,
    }


def export_timeline_json(
    snapshot: ScheduleSnapshot,
    day: date,
    out_json_path: str | Path,
    *,
    now: Optional[datetime] = None,
) -> None:
    payload = timeline_payload(snapshot, day, now=now)
    Path(out_json_path).write_text(json.dumps(payload, indent=2), encoding="utf-8")
