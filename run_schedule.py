from __future__ import annotations

import argparse
from pathlib import Path
from datetime import datetime
from typing import Optional, Sequence
import logging
import sys
import time

import pandas as pd

from cleaning_utils import load_and_clean
from config import EngineConfig, configure_logging
from exporters import export_timeline_json, write_excel, write_snapshot_excel
from schedule_worker import ScheduleWorker
from scheduling_core import (
    InMemoryRunStore,
    PersistenceFailure,
    RunStore,
    commit_day_optimization,
    commit_move,
    optimize_day,
    tick,
    validate_move,
)

logger = logging.getLogger(__name__)


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    if s is None:
        return None
    return pd.to_datetime(s).to_pydatetime()


def open_store(args) -> RunStore:
    if args.sql:
        # pyodbc is only needed when talking to SQL Server
        from db_sqlserver import SqlServerConfig, SqlServerRunStore

        cfg = SqlServerConfig(
            driver=args.driver,
            server=args.server,
            database=args.database,
            trusted_connection=not args.no_trusted_connection,
        )
        return SqlServerRunStore(cfg)

    if not args.workbook:
        raise SystemExit("Either --workbook PATH or --sql is required.")
    in_path = Path(args.workbook).expanduser().resolve()
    return InMemoryRunStore(load_and_clean(in_path))


def _write_back(args, store: RunStore) -> None:
    if getattr(args, "write_back", None):
        out = Path(args.write_back)
        write_snapshot_excel(out, store.load_snapshot())
        print(f"Wrote: {out}")


def cmd_optimize(args, store: RunStore) -> int:
    now = _parse_dt(args.now) or datetime.now()
    day = pd.to_datetime(args.date).date()

    snapshot = store.load_snapshot()
    result = optimize_day(snapshot, day, now=now)
    for line in result.trace:
        print(line)

    status = 0
    if not args.dry_run:
        try:
            commit_day_optimization(store, snapshot, result)
        except PersistenceFailure as e:
            print(f"Commit failed for run {e.run_id} after {len(e.committed)} commit(s): {e}", file=sys.stderr)
            status = 1

    print(
        f"Relocated: {result.relocated_count}  Unchanged: {result.unchanged_count}  "
        f"Unoptimized: {result.unoptimized_count}"
    )

    if args.report:
        write_excel(Path(args.report), snapshot, result)
        print(f"Wrote: {args.report}")
    if args.timeline:
        export_timeline_json(store.load_snapshot(), day, Path(args.timeline), now=now)
        print(f"Wrote: {args.timeline}")
    _write_back(args, store)
    return status


def cmd_validate(args, store: RunStore) -> int:
    now = _parse_dt(args.now) or datetime.now()
    snapshot = store.load_snapshot()
    run = snapshot.run(args.run)
    if run is None:
        print(f"Run {args.run} not found.", file=sys.stderr)
        return 2

    start = _parse_dt(args.start)
    if args.commit:
        try:
            verdict, _moved = commit_move(store, snapshot, run, args.line, start, now=now)
        except PersistenceFailure as e:
            print(f"Commit failed: {e}", file=sys.stderr)
            return 1
    else:
        verdict = validate_move(snapshot, run, args.line, start, now=now)

    if verdict.accept:
        print(f"OK: run {run.id} -> line {args.line} {start:%Y-%m-%d %H:%M}-{verdict.proposed_end:%H:%M}")
        _write_back(args, store)
        return 0
    print(f"REJECTED ({verdict.reason.value}): {verdict.message}")
    return 1


def cmd_tick(args, store: RunStore) -> int:
    now = _parse_dt(args.now) or datetime.now()
    try:
        result = tick(store.load_snapshot(), store, now=now)
    except PersistenceFailure as e:
        print(f"Commit failed for run {e.run_id} after {len(e.committed)} commit(s): {e}", file=sys.stderr)
        return 1
    for t in result.transitions:
        print(f"{t.run_id}: {t.previous.value} -> {t.new.value}")
    if not result.transitions:
        print("No status changes.")
    _write_back(args, store)
    return 0


def cmd_serve(args, store: RunStore) -> int:
    worker = ScheduleWorker(store, config=EngineConfig(tick_interval_seconds=args.interval))
    worker.start()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping the schedule worker")
    finally:
        worker.stop(timeout=5.0)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Production line scheduling engine")
    ap.add_argument("--workbook", help="Input Excel workbook (Equipment/Products/ProcessingTimes/Lines/OperatingHours/Runs)")
    ap.add_argument("--sql", action="store_true", help="Use the SQL Server store instead of a workbook")
    ap.add_argument("--driver", default="ODBC Driver 17 for SQL Server")
    ap.add_argument("--server", default="localhost")
    ap.add_argument("--database", default="ProductionScheduling")
    ap.add_argument("--no-trusted-connection", action="store_true")
    ap.add_argument("--now", help="Override the current time, 'YYYY-MM-DD HH:MM'")
    ap.add_argument("-v", "--verbose", action="store_true")

    sub = ap.add_subparsers(dest="command", required=True)

    op = sub.add_parser("optimize", help="Re-place movable runs on one day")
    op.add_argument("--date", required=True, help="Day to optimize, YYYY-MM-DD")
    op.add_argument("--dry-run", action="store_true", help="Print the plan without committing")
    op.add_argument("--report", help="Write an Excel report of the pass")
    op.add_argument("--timeline", help="Write the day's timeline JSON after committing")
    op.add_argument("--write-back", help="Write the resulting snapshot to this workbook")
    op.set_defaults(func=cmd_optimize)

    vp = sub.add_parser("validate", help="Check (and optionally commit) a manual move")
    vp.add_argument("--run", required=True)
    vp.add_argument("--line", required=True, help="Target line id")
    vp.add_argument("--start", required=True, help="Proposed start, 'YYYY-MM-DD HH:MM'")
    vp.add_argument("--commit", action="store_true")
    vp.add_argument("--write-back", help="Write the resulting snapshot to this workbook")
    vp.set_defaults(func=cmd_validate)

    tp = sub.add_parser("tick", help="Advance run statuses once")
    tp.add_argument("--write-back", help="Write the resulting snapshot to this workbook")
    tp.set_defaults(func=cmd_tick)

    sp = sub.add_parser("serve", help="Run the status clock until interrupted")
    sp.add_argument("--interval", type=float, default=EngineConfig().tick_interval_seconds)
    sp.set_defaults(func=cmd_serve)

    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    store = open_store(args)
    return args.func(args, store)


if __name__ == "__main__":
    sys.exit(main())
