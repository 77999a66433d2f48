"""
Holiday / blackout calendar.

- BlackoutDate rows (manual or imported from the holiday list) are the
  source of truth the trip scheduler consults: no trips on a blackout date.
- data/holidays.json is a read-only list of public holidays
  (name, first date, duration in days) that admins can import as blackouts.
"""
import json
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config.settings import settings
from core.exceptions import NotFound, ValidationError
from models.db_models import BlackoutDate
from models.enums import BlackoutSource

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parent.parent


@dataclass(frozen=True)
class Holiday:
    name: str
    date: date
    type: str = "national"
    duration_days: int = 1

    @property
    def end_date(self) -> date:
        return self.date + timedelta(days=max(1, self.duration_days) - 1)

    def dates(self) -> list[date]:
        """Every calendar day the holiday covers."""
        return [self.date + timedelta(days=i) for i in range(max(1, self.duration_days))]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "date": self.date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "type": self.type,
            "duration_days": self.duration_days,
        }


@lru_cache(maxsize=4)
def load_holidays(path: Optional[str] = None) -> tuple[Holiday, ...]:
    """Read the holiday list once per path. Relative paths resolve from the project root."""
    file_path = Path(path or settings.HOLIDAY_DATA_FILE)
    if not file_path.is_absolute():
        file_path = ROOT_DIR / file_path
    if not file_path.exists():
        logger.warning("Holiday data file %s not found; holiday import disabled", file_path)
        return ()
    with file_path.open(encoding="utf-8") as fh:
        raw = json.load(fh)
    holidays = tuple(
        Holiday(
            name=item["name"],
            date=date.fromisoformat(item["date"]),
            type=item.get("type", "national"),
            duration_days=int(item.get("duration_days", 1)),
        )
        for item in raw
    )
    logger.info("Loaded %s holidays from %s", len(holidays), file_path)
    return tuple(sorted(holidays, key=lambda h: (h.date, h.name)))


def _overlaps(day: date, blackouts: Iterable[BlackoutDate]) -> bool:
    return any(b.start_date <= day <= b.end_date for b in blackouts)


class HolidayCalendar:
    def __init__(self, session: AsyncSession, holidays: Optional[Iterable[Holiday]] = None):
        self.session = session
        self._holidays = tuple(holidays) if holidays is not None else None

    @property
    def holidays(self) -> tuple[Holiday, ...]:
        if self._holidays is None:
            self._holidays = load_holidays()
        return self._holidays

    # ------------- blackout lookups (used by the scheduler) -------------
    async def blackout_for(self, day: date) -> BlackoutDate | None:
        """Return the blackout covering `day`, or None."""
        result = await self.session.execute(
            select(BlackoutDate)
            .where(BlackoutDate.start_date <= day)
            .where(BlackoutDate.end_date >= day)
            .order_by(BlackoutDate.start_date)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def is_blackout(self, day: date) -> bool:
        return await self.blackout_for(day) is not None

    async def list_blackouts(self, start: Optional[date] = None, end: Optional[date] = None) -> list[BlackoutDate]:
        stmt = select(BlackoutDate).order_by(BlackoutDate.start_date, BlackoutDate.id)
        if start is not None:
            stmt = stmt.where(BlackoutDate.end_date >= start)
        if end is not None:
            stmt = stmt.where(BlackoutDate.start_date <= end)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ------------- admin maintenance -------------
    async def add_blackout(self, name: str, start_date: date, end_date: Optional[date] = None,
                           source: BlackoutSource = BlackoutSource.MANUAL) -> BlackoutDate:
        end_date = end_date or start_date
        if not name or not name.strip():
            raise ValidationError("Blackout name is required")
        if end_date < start_date:
            raise ValidationError("Blackout end_date must not be before start_date")
        blackout = BlackoutDate(name=name.strip(), start_date=start_date, end_date=end_date,
                                source=BlackoutSource(source).value)
        self.session.add(blackout)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.info("Blackout added: %s %s..%s (%s)", blackout.name, start_date, end_date, blackout.source)
        return blackout

    async def remove_blackout(self, blackout_id: int) -> None:
        blackout = await self.session.get(BlackoutDate, blackout_id)
        if blackout is None:
            raise NotFound(f"Blackout {blackout_id} not found")
        await self.session.delete(blackout)
        await self.session.commit()
        logger.info("Blackout removed: %s (%s)", blackout_id, blackout.name)

    # ------------- holiday list -------------
    def upcoming_holidays(self, today: date, days: int = 365) -> list[Holiday]:
        horizon = today + timedelta(days=days)
        return [h for h in self.holidays if h.end_date >= today and h.date <= horizon]

    def holidays_for_year(self, year: int) -> list[Holiday]:
        return [h for h in self.holidays if h.date.year == year]

    async def holiday_suggestions(self, today: date, days: int = 365) -> list[dict]:
        """
        Upcoming holidays annotated with how much of each is already
        covered by existing blackouts (fully / partially / not at all).
        """
        upcoming = self.upcoming_holidays(today, days)
        if not upcoming:
            return []
        blackouts = await self.list_blackouts(upcoming[0].date, max(h.end_date for h in upcoming))
        suggestions = []
        for holiday in upcoming:
            covered = [d for d in holiday.dates() if _overlaps(d, blackouts)]
            fully = len(covered) == len(holiday.dates())
            suggestions.append({
                "holiday": holiday.to_dict(),
                "overlapping_dates": [d.isoformat() for d in covered],
                "fully_added": fully,
                "partially_added": bool(covered) and not fully,
            })
        return suggestions

    async def import_holidays(self, today: date, year: Optional[int] = None,
                              names: Optional[Iterable[str]] = None) -> dict:
        """
        Create blackout rows for holidays not already fully covered.

        Scope: holidays of `year` if given, else the upcoming year from `today`;
        optionally restricted to the given holiday names. Re-running is a no-op
        for holidays that were already imported.
        """
        candidates = self.holidays_for_year(year) if year else self.upcoming_holidays(today)
        if names is not None:
            wanted = {n.strip().lower() for n in names}
            candidates = [h for h in candidates if h.name.lower() in wanted]

        created, skipped = [], []
        if candidates:
            blackouts = await self.list_blackouts(candidates[0].date, max(h.end_date for h in candidates))
        else:
            blackouts = []
        for holiday in candidates:
            if all(_overlaps(d, blackouts) for d in holiday.dates()):
                skipped.append(holiday.name)
                continue
            blackout = BlackoutDate(
                name=holiday.name,
                start_date=holiday.date,
                end_date=holiday.end_date,
                source=BlackoutSource.HOLIDAY_CALENDAR.value,
            )
            self.session.add(blackout)
            blackouts.append(blackout)
            created.append(blackout)

        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.info("Holiday import: %s created, %s already covered", len(created), len(skipped))
        return {"created": created, "skipped": skipped}

    @staticmethod
    def to_dict(blackout: BlackoutDate) -> dict:
        return {
            "id": blackout.id,
            "name": blackout.name,
            "start_date": blackout.start_date.isoformat(),
            "end_date": blackout.end_date.isoformat(),
            "source": blackout.source,
        }
