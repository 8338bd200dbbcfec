from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import (
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)
import logging

from config import DEFAULT_ACTIVE_DAYS, DEFAULT_WINDOW_END, DEFAULT_WINDOW_START

logger = logging.getLogger(__name__)


# ----------------------------
# Types / Exceptions
# ----------------------------

Interval = Tuple[datetime, datetime]  # [start, end)


class ScheduleError(Exception):
    pass


class ResolutionError(ScheduleError):
    """A product or line id is missing from the snapshot."""


class InvalidTransitionError(ScheduleError):
    pass


class PersistenceFailure(ScheduleError):
    """
    The store collaborator could not commit a run.

    `committed` lists the runs that were persisted before the failure when the
    error comes out of one of the sequential commit helpers.
    """

    def __init__(
        self,
        message: str,
        *,
        run_id: Optional[str] = None,
        committed: Iterable["ScheduledRun"] = (),
    ):
        super().__init__(message)
        self.run_id = run_id
        self.committed: List[ScheduledRun] = list(committed)


class Classification(str, Enum):
    TOP_SELLER = "Top Seller"
    NORMAL = "Normal"


class RunStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.CANCELLED})

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


def day_of_week(d: date) -> int:
    """0=Sunday .. 6=Saturday."""
    return (d.weekday() + 1) % 7


def truncate_to_minute(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)


def hhmm(t: time | datetime) -> str:
    return t.strftime("%H:%M")


# ----------------------------
# Data model
# ----------------------------

@dataclass(frozen=True, slots=True)
class Equipment:
    id: str
    name: str
    type: str = ""


@dataclass(frozen=True, slots=True)
class Product:
    """
    A product and its processing profile.

    processing_times maps equipment id -> minutes per unit. Equipment on a line
    that is missing from the profile contributes no time.
    """
    id: str
    name: str
    classification: Classification = Classification.NORMAL
    processing_times: Dict[str, float] = field(default_factory=dict)
    sku: str = ""

    @property
    def is_top_seller(self) -> bool:
        return self.classification is Classification.TOP_SELLER


@dataclass(frozen=True, slots=True)
class OperatingDay:
    day_of_week: int
    active: bool = False
    start: time = DEFAULT_WINDOW_START
    end: time = DEFAULT_WINDOW_END

    def __post_init__(self) -> None:
        if not 0 <= int(self.day_of_week) <= 6:
            raise ValueError(f"day_of_week must be 0..6, got {self.day_of_week}")
        if self.active and self.start >= self.end:
            raise ValueError(
                f"{DAY_NAMES[self.day_of_week]}: end {hhmm(self.end)} must be after start {hhmm(self.start)}."
            )

    def window_on(self, day: date) -> Interval:
        return datetime.combine(day, self.start), datetime.combine(day, self.end)


def default_operating_calendar(
    start: time = DEFAULT_WINDOW_START,
    end: time = DEFAULT_WINDOW_END,
    active_days: Iterable[int] = DEFAULT_ACTIVE_DAYS,
) -> Tuple[OperatingDay, ...]:
    active = set(active_days)
    return tuple(OperatingDay(i, active=i in active, start=start, end=end) for i in range(7))


@dataclass(frozen=True, slots=True)
class ProductionLine:
    id: str
    name: str
    equipment_ids: Tuple[str, ...] = ()
    operating_hours: Tuple[OperatingDay, ...] = field(default_factory=default_operating_calendar)
    description: str = ""

    def operating_day(self, weekday: int) -> Optional[OperatingDay]:
        for od in self.operating_hours:
            if od.day_of_week == weekday:
                return od
        return None

    def window_for(self, day: date) -> Optional[Interval]:
        """Operating window on `day`, or None when the line does not run that day."""
        od = self.operating_day(day_of_week(day))
        if od is None or not od.active:
            return None
        return od.window_on(day)


@dataclass(frozen=True, slots=True)
class ScheduledRun:
    id: str
    product_id: str
    line_id: str
    start: datetime
    end: datetime
    quantity: int
    status: RunStatus = RunStatus.PENDING
    notes: str = ""

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Run {self.id}: end {self.end} must be after start {self.start}.")
        if int(self.quantity) <= 0:
            raise ValueError(f"Run {self.id}: quantity must be > 0, got {self.quantity}.")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def day(self) -> date:
        return self.start.date()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ----------------------------
# Line setup helpers
# ----------------------------

def move_equipment(line: ProductionLine, index: int, direction: str) -> ProductionLine:
    """Move one equipment id up or down the line's processing sequence."""
    if direction not in ("up", "down"):
        raise ValueError("direction must be 'up' or 'down'")
    ids = list(line.equipment_ids)
    if not 0 <= index < len(ids):
        raise IndexError(f"No equipment at position {index} on line {line.name}.")

    item = ids.pop(index)
    if direction == "up":
        ids.insert(max(0, index - 1), item)
    else:
        ids.insert(min(len(ids), index + 1), item)
    return replace(line, equipment_ids=tuple(ids))


def add_equipment(line: ProductionLine, equipment_id: str) -> ProductionLine:
    if equipment_id in line.equipment_ids:
        return line
    return replace(line, equipment_ids=line.equipment_ids + (equipment_id,))


def remove_equipment(line: ProductionLine, equipment_id: str) -> ProductionLine:
    return replace(line, equipment_ids=tuple(e for e in line.equipment_ids if e != equipment_id))


def format_operating_hours_summary(hours: Iterable[OperatingDay]) -> str:
    """
    Short weekly summary, grouping consecutive days that share the same hours.

    e.g. "Mon-Fri: 08:00 - 17:00, Sat: 08:00 - 12:00"
    """
    active = sorted((od for od in hours if od.active), key=lambda od: od.day_of_week)
    if not active:
        return "Closed"

    parts: List[str] = []
    i = 0
    while i < len(active):
        j = i
        while (
            j + 1 < len(active)
            and active[j + 1].day_of_week == active[j].day_of_week + 1
            and active[j + 1].start == active[j].start
            and active[j + 1].end == active[j].end
        ):
            j += 1
        first = DAY_NAMES[active[i].day_of_week][:3]
        last = DAY_NAMES[active[j].day_of_week][:3]
        span = first if i == j else f"{first}-{last}"
        parts.append(f"{span}: {hhmm(active[i].start)} - {hhmm(active[i].end)}")
        i = j + 1
    return ", ".join(parts)


# ----------------------------
# Snapshot
# ----------------------------

@dataclass(frozen=True)
class ScheduleSnapshot:
    """
    Read-only view of everything the engine needs for one call.

    The engine never mutates a snapshot; committing changes produces a new one.
    """
    equipment: Tuple[Equipment, ...] = ()
    products: Tuple[Product, ...] = ()
    lines: Tuple[ProductionLine, ...] = ()
    runs: Tuple[ScheduledRun, ...] = ()

    _products: Dict[str, Product] = field(init=False, repr=False, compare=False)
    _lines: Dict[str, ProductionLine] = field(init=False, repr=False, compare=False)
    _runs: Dict[str, ScheduledRun] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "equipment", tuple(self.equipment))
        object.__setattr__(self, "products", tuple(self.products))
        object.__setattr__(self, "lines", tuple(self.lines))
        object.__setattr__(self, "runs", tuple(sorted(self.runs, key=lambda r: r.start)))
        object.__setattr__(self, "_products", {p.id: p for p in self.products})
        object.__setattr__(self, "_lines", {ln.id: ln for ln in self.lines})
        object.__setattr__(self, "_runs", {r.id: r for r in self.runs})

    def product(self, product_id: str) -> Optional[Product]:
        return self._products.get(str(product_id))

    def line(self, line_id: str) -> Optional[ProductionLine]:
        return self._lines.get(str(line_id))

    def run(self, run_id: str) -> Optional[ScheduledRun]:
        return self._runs.get(str(run_id))

    def require_product(self, product_id: str) -> Product:
        p = self.product(product_id)
        if p is None:
            raise ResolutionError(f"Product {product_id} not found.")
        return p

    def require_line(self, line_id: str) -> ProductionLine:
        ln = self.line(line_id)
        if ln is None:
            raise ResolutionError(f"Line {line_id} not found.")
        return ln

    def require_run(self, run_id: str) -> ScheduledRun:
        r = self.run(run_id)
        if r is None:
            raise ResolutionError(f"Run {run_id} not found.")
        return r

    def runs_starting_on(self, day: date, line_id: Optional[str] = None) -> List[ScheduledRun]:
        return [
            r for r in self.runs
            if r.start.date() == day and (line_id is None or r.line_id == line_id)
        ]

    def with_runs(self, updated: Iterable[ScheduledRun]) -> "ScheduleSnapshot":
        by_id = dict(self._runs)
        for r in updated:
            by_id[r.id] = r
        return ScheduleSnapshot(
            equipment=self.equipment,
            products=self.products,
            lines=self.lines,
            runs=tuple(by_id.values()),
        )


# ----------------------------
# Locking model
# ----------------------------

def is_movable(run: ScheduledRun, product: Optional[Product]) -> bool:
    """Normal + Pending. A run whose product is unknown is never movable."""
    if product is None:
        return False
    return product.classification is Classification.NORMAL and run.status is RunStatus.PENDING


def is_locked(run: ScheduledRun, product: Optional[Product]) -> bool:
    return not is_movable(run, product)


def lock_reason(run: ScheduledRun, product: Optional[Product]) -> str:
    if product is None:
        return f"product {run.product_id} not found"
    if product.is_top_seller:
        return "is a Top Seller"
    if run.status is not RunStatus.PENDING:
        return f"status is '{run.status.value}'"
    return ""


# ----------------------------
# Duration calculator
# ----------------------------

def compute_duration(
    product: Optional[Product],
    line: Optional[ProductionLine],
    quantity: int,
) -> float:
    """
    Total processing minutes for `quantity` units of `product` on `line`.

    Sums the product's per-unit time over the line's equipment (missing
    equipment counts as 0) and scales by quantity. Never negative.
    """
    if product is None or line is None or quantity <= 0:
        return 0.0
    if not product.processing_times or not line.equipment_ids:
        return 0.0

    per_unit = 0.0
    for eq_id in line.equipment_ids:
        minutes = float(product.processing_times.get(eq_id, 0.0) or 0.0)
        if minutes > 0:
            per_unit += minutes
    return per_unit * int(quantity)


# ----------------------------
# Conflict detector
# ----------------------------

def overlaps(
    candidate_start: datetime,
    candidate_end: datetime,
    existing_start: datetime,
    existing_end: datetime,
) -> bool:
    """Half-open overlap; touching boundaries do not conflict."""
    return candidate_start < existing_end and candidate_end > existing_start


class ConflictKind(str, Enum):
    LOCKED = "locked"
    MOVABLE = "movable"


class Conflict(NamedTuple):
    run: ScheduledRun
    kind: ConflictKind
    product: Optional[Product]


def find_conflicts(
    snapshot: ScheduleSnapshot,
    start: datetime,
    end: datetime,
    runs: Iterable[ScheduledRun],
) -> List[Conflict]:
    """Every run in `runs` that overlaps [start, end), tagged locked/movable."""
    out: List[Conflict] = []
    for r in runs:
        if not overlaps(start, end, r.start, r.end):
            continue
        product = snapshot.product(r.product_id)
        kind = ConflictKind.MOVABLE if is_movable(r, product) else ConflictKind.LOCKED
        out.append(Conflict(run=r, kind=kind, product=product))
    out.sort(key=lambda c: (c.kind is not ConflictKind.LOCKED, c.run.start))
    return out


# ----------------------------
# Day optimizer
# ----------------------------

@dataclass(frozen=True, slots=True)
class Placement:
    run_id: str
    line_id: str
    start: datetime
    end: datetime


@dataclass
class DayOptimization:
    day: date
    placements: Dict[str, Placement] = field(default_factory=dict)
    relocated_count: int = 0
    unoptimized_count: int = 0
    unchanged_count: int = 0
    trace: List[str] = field(default_factory=list)

    def note(self, message: str) -> None:
        logger.debug(message)
        self.trace.append(message)


def search_origin(window_start: datetime, day: date, now: datetime) -> datetime:
    """Window start, pushed to the current minute when `day` is today."""
    if day == now.date():
        return max(window_start, truncate_to_minute(now))
    return window_start


def find_earliest_slot(
    duration_minutes: float,
    origin: datetime,
    window_end: datetime,
    occupied: Sequence[Interval],
) -> Optional[Interval]:
    """
    Linear forward search from `origin` for the first gap that fits.

    `occupied` must be sorted by start. Returns None when the run cannot end
    by `window_end`.
    """
    length = timedelta(minutes=duration_minutes)
    cursor = origin
    while True:
        proposed_end = cursor + length
        if proposed_end > window_end:
            return None

        collision = None
        for slot_start, slot_end in occupied:
            if overlaps(cursor, proposed_end, slot_start, slot_end):
                collision = slot_end
                break

        if collision is None:
            return cursor, proposed_end
        cursor = max(collision, origin)


def _insert_sorted(occupied: List[Interval], slot: Interval) -> None:
    occupied.append(slot)
    occupied.sort(key=lambda s: s[0])


class _Candidate(NamedTuple):
    run: ScheduledRun
    product: Product
    label: str
    duration: float


def _place_movable(
    line: ProductionLine,
    day: date,
    now: datetime,
    locked: Sequence[Interval],
    candidates: Sequence[_Candidate],
    current: Dict[str, Interval],
) -> Tuple[Dict[str, Interval], Dict[str, str]]:
    """
    One placement round over the movable runs of a line.

    Runs are taken in order of their `current` start. A run that cannot be
    placed keeps its current interval and becomes an obstacle; the round then
    restarts with it fixed, so nothing placed overlaps a run left in place.
    The kept set only grows, so the restarts end.

    Returns (slot per placed run id, trace message per kept run id).
    """
    window = line.window_for(day)
    weekday = DAY_NAMES[day_of_week(day)]
    ordered = sorted(candidates, key=lambda c: current[c.run.id][0])

    origin = search_origin(window[0], day, now) if window is not None else None

    kept: Dict[str, str] = {}
    for c in ordered:
        if c.duration <= 0:
            kept[c.run.id] = f"{c.label} has no processing time on line {line.name}; kept in place."
        elif window is None:
            kept[c.run.id] = f"Line {line.name} does not operate on {weekday}; {c.label} not optimized."
        elif origin >= window[1]:
            kept[c.run.id] = (
                f"Search for {c.label} on line {line.name} starts after the end of operation "
                f"({hhmm(window[1])}); kept in place."
            )

    while True:
        occupied: List[Interval] = sorted(
            list(locked) + [current[run_id] for run_id in kept],
            key=lambda s: s[0],
        )
        slots: Dict[str, Interval] = {}
        blocked = None
        for c in ordered:
            if c.run.id in kept:
                continue
            slot = find_earliest_slot(c.duration, origin, window[1], occupied)
            if slot is None:
                blocked = c
                break
            slots[c.run.id] = slot
            _insert_sorted(occupied, slot)

        if blocked is None:
            return slots, kept
        kept[blocked.run.id] = f"No free slot for {blocked.label} on line {line.name}; kept in place."


def _optimize_line(
    snapshot: ScheduleSnapshot,
    line: ProductionLine,
    day: date,
    runs: List[ScheduledRun],
    now: datetime,
    result: DayOptimization,
) -> None:
    locked: List[Interval] = []
    candidates: List[_Candidate] = []

    for r in runs:
        product = snapshot.product(r.product_id)
        if is_movable(r, product):
            candidates.append(_Candidate(
                run=r,
                product=product,
                label=f"{product.name} (run {r.id})",
                duration=compute_duration(product, line, r.quantity),
            ))
            continue

        locked.append((r.start, r.end))
        if product is None:
            result.unoptimized_count += 1
            result.note(f"Product {r.product_id} (run {r.id}) not found; kept in place.")
        elif product.is_top_seller:
            result.note(f"{product.name} (run {r.id}) is a Top Seller; kept in place.")
        elif product.classification is Classification.NORMAL:
            result.unoptimized_count += 1
            result.note(f"{product.name} (run {r.id}) kept: status '{r.status.value}'.")
        else:
            result.unoptimized_count += 1
            result.note(
                f"Run {r.id} ({product.name}) has unexpected status/classification; kept in place."
            )

    if not candidates:
        return

    # Repeat rounds from the layout the previous round produced until a round
    # changes nothing; the layout handed back is then stable under another pass.
    # A line whose rounds cycle keeps every movable run where it is.
    current: Dict[str, Interval] = {c.run.id: (c.run.start, c.run.end) for c in candidates}
    seen = set()
    settled = False
    for _ in range(2 * len(candidates) + 4):
        layout = tuple(sorted(current.items()))
        if layout in seen:
            break
        seen.add(layout)
        slots, kept = _place_movable(line, day, now, locked, candidates, current)
        if all(current[run_id] == slot for run_id, slot in slots.items()):
            settled = True
            break
        current = {**current, **slots}

    if not settled:
        logger.warning("Placements on line %s for %s did not settle", line.id, day.isoformat())
        for c in candidates:
            result.unoptimized_count += 1
            result.note(f"{c.label} kept in place: placements on line {line.name} did not settle.")
        return

    for c in sorted(candidates, key=lambda c: current[c.run.id][0]):
        r = c.run
        start, end = current[r.id]
        if (start, end) == (r.start, r.end):
            if r.id in kept:
                result.unoptimized_count += 1
                result.note(kept[r.id])
            else:
                result.unchanged_count += 1
                result.note(f"{c.label} already at {hhmm(start)} on line {line.name}.")
            continue

        result.placements[r.id] = Placement(run_id=r.id, line_id=line.id, start=start, end=end)
        result.relocated_count += 1
        result.note(f"{c.label} placed at {hhmm(start)}-{hhmm(end)} on line {line.name}.")


def optimize_day(
    snapshot: ScheduleSnapshot,
    day: date,
    *,
    now: Optional[datetime] = None,
) -> DayOptimization:
    """
    Re-place every movable run starting on `day`, line by line.

    Locked runs are fixed obstacles. Movable runs are taken in order of their
    current start and packed into the earliest gap inside the line's operating
    window; a movable run that cannot be placed stays where it is and blocks
    its interval too. Pure: nothing is persisted here, see commit_day_optimization.
    """
    now = now or datetime.now()
    if isinstance(day, datetime):
        day = day.date()

    result = DayOptimization(day=day)
    day_runs = snapshot.runs_starting_on(day)

    if not day_runs:
        result.note(f"No runs scheduled on {day.isoformat()}.")
        return result

    if not any(is_movable(r, snapshot.product(r.product_id)) for r in day_runs):
        result.note(f"No Normal runs with status Pending on {day.isoformat()}; nothing to optimize.")

    line_ids: List[str] = []
    for r in day_runs:
        if r.line_id not in line_ids:
            line_ids.append(r.line_id)

    for line_id in line_ids:
        line_runs = [r for r in day_runs if r.line_id == line_id]
        line = snapshot.line(line_id)
        if line is None:
            result.unoptimized_count += len(line_runs)
            result.note(f"Line {line_id} not found; {len(line_runs)} run(s) on it were not processed.")
            continue
        _optimize_line(snapshot, line, day, line_runs, now, result)

    logger.info(
        "Optimized %s: %d relocated, %d unchanged, %d unoptimized",
        day.isoformat(), result.relocated_count, result.unchanged_count, result.unoptimized_count,
    )
    return result


def apply_placements(snapshot: ScheduleSnapshot, result: DayOptimization) -> List[ScheduledRun]:
    """Relocated copies of the runs named in `result`, in start order."""
    out: List[ScheduledRun] = []
    for p in result.placements.values():
        run = snapshot.require_run(p.run_id)
        out.append(replace(run, line_id=p.line_id, start=p.start, end=p.end))
    out.sort(key=lambda r: r.start)
    return out


# ----------------------------
# Interactive placement validator
# ----------------------------

class RejectionReason(str, Enum):
    NOT_FOUND = "not_found"
    LOCKED = "locked"
    LINE_INACTIVE = "line_inactive"
    OUTSIDE_OPERATING_HOURS = "outside_operating_hours"
    IN_THE_PAST = "in_the_past"
    LOCKED_CONFLICT = "locked_conflict"
    NORMAL_CONFLICT = "normal_conflict"


@dataclass(frozen=True, slots=True)
class MoveVerdict:
    accept: bool
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None
    proposed_end: Optional[datetime] = None
    conflicting_run_id: Optional[str] = None

    @classmethod
    def accepted(cls, proposed_end: datetime) -> "MoveVerdict":
        return cls(accept=True, proposed_end=proposed_end)

    @classmethod
    def rejected(
        cls,
        reason: RejectionReason,
        message: str,
        *,
        proposed_end: Optional[datetime] = None,
        conflicting_run_id: Optional[str] = None,
    ) -> "MoveVerdict":
        return cls(
            accept=False,
            reason=reason,
            message=message,
            proposed_end=proposed_end,
            conflicting_run_id=conflicting_run_id,
        )


def validate_move(
    snapshot: ScheduleSnapshot,
    run: ScheduledRun,
    target_line_id: str,
    proposed_start: datetime,
    *,
    now: Optional[datetime] = None,
) -> MoveVerdict:
    """
    Decide whether `run` may be moved to `target_line_id` starting at `proposed_start`.

    Advisory only: no mutation. The run keeps its current duration.
    """
    now = now or datetime.now()

    product = snapshot.product(run.product_id)
    if product is None:
        return MoveVerdict.rejected(RejectionReason.NOT_FOUND, f"Product {run.product_id} not found.")

    if not is_movable(run, product):
        return MoveVerdict.rejected(
            RejectionReason.LOCKED,
            f"Cannot move {product.name}: {lock_reason(run, product)}.",
        )

    line = snapshot.line(target_line_id)
    if line is None:
        return MoveVerdict.rejected(RejectionReason.NOT_FOUND, f"Line {target_line_id} not found.")

    proposed_end = proposed_start + run.duration
    day = proposed_start.date()

    window = line.window_for(day)
    if window is None:
        return MoveVerdict.rejected(
            RejectionReason.LINE_INACTIVE,
            f"Line {line.name} does not operate on {DAY_NAMES[day_of_week(day)]}.",
            proposed_end=proposed_end,
        )

    window_start, window_end = window
    if proposed_start < window_start or proposed_end > window_end:
        return MoveVerdict.rejected(
            RejectionReason.OUTSIDE_OPERATING_HOURS,
            f"Outside the operating hours of line {line.name} "
            f"({hhmm(window_start)}-{hhmm(window_end)}).",
            proposed_end=proposed_end,
        )

    if day == now.date():
        current_minute = truncate_to_minute(now)
        if proposed_start < current_minute:
            return MoveVerdict.rejected(
                RejectionReason.IN_THE_PAST,
                f"Cannot move to a time before now ({hhmm(current_minute)}).",
                proposed_end=proposed_end,
            )

    others = [r for r in snapshot.runs_starting_on(day, target_line_id) if r.id != run.id]
    conflicts = find_conflicts(snapshot, proposed_start, proposed_end, others)
    if conflicts:
        c = conflicts[0]
        name = c.product.name if c.product is not None else f"product {c.run.product_id}"
        if c.kind is ConflictKind.LOCKED:
            what = "Top Seller" if c.product is not None and c.product.is_top_seller else "locked run"
            return MoveVerdict.rejected(
                RejectionReason.LOCKED_CONFLICT,
                f"Conflicts with {what}: {name}.",
                proposed_end=proposed_end,
                conflicting_run_id=c.run.id,
            )
        return MoveVerdict.rejected(
            RejectionReason.NORMAL_CONFLICT,
            f"Conflicts with Normal run: {name}.",
            proposed_end=proposed_end,
            conflicting_run_id=c.run.id,
        )

    return MoveVerdict.accepted(proposed_end)


def apply_move(run: ScheduledRun, target_line_id: str, proposed_start: datetime) -> ScheduledRun:
    return replace(
        run,
        line_id=str(target_line_id),
        start=proposed_start,
        end=proposed_start + run.duration,
    )


# ----------------------------
# Run status clock
# ----------------------------

class StatusTransition(NamedTuple):
    run_id: str
    previous: RunStatus
    new: RunStatus


def next_status(run: ScheduledRun, now: datetime) -> RunStatus:
    """Forward-only status from wall-clock time. Never yields Cancelled."""
    if run.status is RunStatus.PENDING and run.start <= now < run.end:
        return RunStatus.IN_PROGRESS
    if run.status is RunStatus.IN_PROGRESS and now >= run.end:
        return RunStatus.COMPLETED
    return run.status


def plan_status_transitions(runs: Iterable[ScheduledRun], now: datetime) -> List[ScheduledRun]:
    """Copies of the runs whose status must advance at `now`."""
    out: List[ScheduledRun] = []
    for r in runs:
        if r.is_terminal:
            continue
        new = next_status(r, now)
        if new is not r.status:
            out.append(replace(r, status=new))
    return out


def cancel_run(run: ScheduledRun) -> ScheduledRun:
    if run.is_terminal:
        raise InvalidTransitionError(
            f"Run {run.id} is '{run.status.value}' and cannot be cancelled."
        )
    return replace(run, status=RunStatus.CANCELLED)


# ----------------------------
# Store boundary
# ----------------------------

class RunStore(Protocol):
    """Persistence collaborator. commit_run raises PersistenceFailure on failure."""

    def load_snapshot(self) -> ScheduleSnapshot:
        ...

    def commit_run(self, run: ScheduledRun) -> ScheduledRun:
        ...


class InMemoryRunStore:
    """RunStore over a snapshot held in memory (workbook input, tests)."""

    def __init__(self, snapshot: ScheduleSnapshot):
        self._snapshot = snapshot

    def load_snapshot(self) -> ScheduleSnapshot:
        return self._snapshot

    def commit_run(self, run: ScheduledRun) -> ScheduledRun:
        if self._snapshot.run(run.id) is None:
            raise PersistenceFailure(f"Run {run.id} does not exist in the store.", run_id=run.id)
        self._snapshot = self._snapshot.with_runs([run])
        return run


def commit_runs(store: RunStore, runs: Iterable[ScheduledRun]) -> List[ScheduledRun]:
    """
    Persist runs one at a time, stopping at the first failure.

    Runs committed before a failure stay committed; the PersistenceFailure
    raised carries them in `committed`.
    """
    committed: List[ScheduledRun] = []
    for r in runs:
        try:
            committed.append(store.commit_run(r))
        except PersistenceFailure as e:
            logger.error("Commit of run %s failed after %d commit(s): %s", r.id, len(committed), e)
            raise PersistenceFailure(str(e), run_id=r.id, committed=committed) from e
    return committed


def commit_day_optimization(
    store: RunStore,
    snapshot: ScheduleSnapshot,
    result: DayOptimization,
) -> ScheduleSnapshot:
    """Persist the relocations in `result`; returns the snapshot advanced by what was committed."""
    committed = commit_runs(store, apply_placements(snapshot, result))
    return snapshot.with_runs(committed)


def commit_move(
    store: RunStore,
    snapshot: ScheduleSnapshot,
    run: ScheduledRun,
    target_line_id: str,
    proposed_start: datetime,
    *,
    now: Optional[datetime] = None,
) -> Tuple[MoveVerdict, Optional[ScheduledRun]]:
    verdict = validate_move(snapshot, run, target_line_id, proposed_start, now=now)
    if not verdict.accept:
        return verdict, None
    moved = store.commit_run(apply_move(run, target_line_id, proposed_start))
    return verdict, moved


class TickResult(NamedTuple):
    transitions: List[StatusTransition]
    snapshot: ScheduleSnapshot


def tick(
    snapshot: ScheduleSnapshot,
    store: RunStore,
    *,
    now: Optional[datetime] = None,
) -> TickResult:
    """One pass of the status clock: plan transitions, then commit them one by one."""
    now = now or datetime.now()
    planned = plan_status_transitions(snapshot.runs, now)
    if not planned:
        return TickResult(transitions=[], snapshot=snapshot)

    before = {r.id: r.status for r in snapshot.runs}
    committed = commit_runs(store, planned)
    transitions = [StatusTransition(r.id, before[r.id], r.status) for r in committed]
    for t in transitions:
        logger.info("Run %s: %s -> %s", t.run_id, t.previous.value, t.new.value)
    return TickResult(transitions=transitions, snapshot=snapshot.with_runs(committed))
