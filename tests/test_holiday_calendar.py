from datetime import date

import pytest

from core.exceptions import NotFound, ValidationError
from services.holiday_calendar import Holiday, HolidayCalendar, load_holidays

EID = Holiday("Eid ul-Fitr", date(2026, 3, 20), "religious", 3)
VICTORY = Holiday("Victory Day", date(2026, 12, 16), "national", 1)
TODAY = date(2026, 1, 1)


def test_bundled_holiday_list_loads():
    holidays = load_holidays()
    assert holidays
    assert Holiday("Victory Day", date(2026, 12, 16), "national", 1) in holidays
    assert list(holidays) == sorted(holidays, key=lambda h: (h.date, h.name))


def test_holiday_span():
    assert EID.end_date == date(2026, 3, 22)
    assert EID.dates() == [date(2026, 3, 20), date(2026, 3, 21), date(2026, 3, 22)]


@pytest.mark.asyncio
async def test_manual_blackouts(session):
    calendar = HolidayCalendar(session, holidays=[])
    blackout = await calendar.add_blackout("Hartal", date(2026, 11, 2), date(2026, 11, 3))

    assert await calendar.is_blackout(date(2026, 11, 3))
    assert not await calendar.is_blackout(date(2026, 11, 4))
    assert (await calendar.blackout_for(date(2026, 11, 2))).name == "Hartal"

    with pytest.raises(ValidationError):
        await calendar.add_blackout("Backwards", date(2026, 11, 5), date(2026, 11, 4))
    with pytest.raises(ValidationError):
        await calendar.add_blackout(" ", date(2026, 11, 5))

    await calendar.remove_blackout(blackout.id)
    assert not await calendar.is_blackout(date(2026, 11, 2))
    with pytest.raises(NotFound):
        await calendar.remove_blackout(blackout.id)


@pytest.mark.asyncio
async def test_import_is_idempotent(session):
    calendar = HolidayCalendar(session, holidays=[EID, VICTORY])

    first = await calendar.import_holidays(TODAY)
    second = await calendar.import_holidays(TODAY)

    assert sorted(b.name for b in first["created"]) == ["Eid ul-Fitr", "Victory Day"]
    assert second["created"] == []
    assert sorted(second["skipped"]) == ["Eid ul-Fitr", "Victory Day"]
    assert len(await calendar.list_blackouts()) == 2
    assert await calendar.is_blackout(date(2026, 3, 22))


@pytest.mark.asyncio
async def test_import_by_name(session):
    calendar = HolidayCalendar(session, holidays=[EID, VICTORY])
    result = await calendar.import_holidays(TODAY, year=2026, names=["victory day"])
    assert [b.name for b in result["created"]] == ["Victory Day"]
    assert result["created"][0].source == "holiday_calendar"


@pytest.mark.asyncio
async def test_suggestions_report_coverage(session):
    calendar = HolidayCalendar(session, holidays=[EID, VICTORY])
    await calendar.add_blackout("Eid (first day only)", date(2026, 3, 20))

    suggestions = {s["holiday"]["name"]: s for s in await calendar.holiday_suggestions(TODAY)}

    assert suggestions["Eid ul-Fitr"]["partially_added"] is True
    assert suggestions["Eid ul-Fitr"]["overlapping_dates"] == ["2026-03-20"]
    assert suggestions["Victory Day"]["fully_added"] is False
    assert suggestions["Victory Day"]["partially_added"] is False

    result = await calendar.import_holidays(TODAY)
    assert [b.name for b in result["created"]] == ["Eid ul-Fitr", "Victory Day"]
