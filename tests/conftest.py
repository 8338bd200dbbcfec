"""Pytest configuration and shared fixtures."""

from datetime import date, datetime, time

import pytest

from scheduling_core import (
    Classification,
    Equipment,
    InMemoryRunStore,
    OperatingDay,
    Product,
    ProductionLine,
    RunStatus,
    ScheduledRun,
    ScheduleSnapshot,
    default_operating_calendar,
)

MONDAY = date(2026, 1, 12)
SUNDAY = date(2026, 1, 11)


def at(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    return datetime.combine(day, time(hour, minute))


def make_run(run_id, product_id, start, end, *, line_id="L1", quantity=1, status=RunStatus.PENDING):
    return ScheduledRun(
        id=run_id,
        product_id=product_id,
        line_id=line_id,
        start=start,
        end=end,
        quantity=quantity,
        status=status,
    )


@pytest.fixture
def equipment():
    """Fixture for the two machines on line L1."""
    return [
        Equipment(id="EQ1", name="Mixer", type="mixing"),
        Equipment(id="EQ2", name="Filler", type="filling"),
    ]


@pytest.fixture
def line():
    """Fixture for a Mon-Fri 08:00-17:00 line with two machines."""
    return ProductionLine(
        id="L1",
        name="Line 1",
        equipment_ids=("EQ1", "EQ2"),
        operating_hours=default_operating_calendar(),
    )


@pytest.fixture
def second_line():
    """Fixture for a line that also runs Saturday mornings."""
    hours = list(default_operating_calendar())
    hours[6] = OperatingDay(6, active=True, start=time(8, 0), end=time(12, 0))
    return ProductionLine(id="L2", name="Line 2", equipment_ids=("EQ1",), operating_hours=tuple(hours))


@pytest.fixture
def normal_product():
    """Fixture for a Normal product taking 1 + 1 minutes per unit on L1."""
    return Product(id="P1", name="Juice", processing_times={"EQ1": 1.0, "EQ2": 1.0})


@pytest.fixture
def top_seller():
    """Fixture for a Top Seller product."""
    return Product(
        id="P2",
        name="Cola",
        classification=Classification.TOP_SELLER,
        processing_times={"EQ1": 0.5, "EQ2": 0.5},
    )


@pytest.fixture
def make_snapshot(equipment, line, second_line, normal_product, top_seller):
    """Factory building a snapshot over the standard catalog with the given runs."""
    def _make(*runs):
        return ScheduleSnapshot(
            equipment=equipment,
            products=[normal_product, top_seller],
            lines=[line, second_line],
            runs=runs,
        )
    return _make


@pytest.fixture
def make_store(make_snapshot):
    def _make(*runs):
        return InMemoryRunStore(make_snapshot(*runs))
    return _make
