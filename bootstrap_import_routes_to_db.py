"""
Seed / refresh the route catalogue (routes, time slots, pickup points)
from data/routes.json. Safe to re-run: rows are upserted by business key.

Usage: python bootstrap_import_routes_to_db.py [path/to/routes.json]
"""
import asyncio
import json
import logging
import os
import sys

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config.settings import settings
from core.db import build_session_maker
from core.logging import configure_logging
from models.db_models import PickupPoint, Route, TimeSlot

logger = logging.getLogger(__name__)

DATA_DIR = "data"
ROUTES_FILE = os.path.join(DATA_DIR, "routes.json")


async def _upsert(session: AsyncSession, model, key_column, key, **values):
    result = await session.execute(select(model).where(key_column == key))
    row = result.scalar_one_or_none()
    if row is None:
        row = model(**{key_column.key: key}, **values)
        session.add(row)
    else:
        for name, value in values.items():
            setattr(row, name, value)
    return row


async def import_routes(session: AsyncSession, path: str = ROUTES_FILE) -> int:
    """
    JSON shape:
        [
          {"route_id": "R1", "name": "...", "price_per_seat": "250.00", "discount_amount": "0",
           "time_slots": [{"time_slot_id": "R1-0730", "departure_time": "07:30"}],
           "points": [{"point_id": "R1-P1", "name": "...", "sequence_order": 1}]}
        ]
    """
    with open(path, "r", encoding="utf-8") as f:
        routes_data = json.load(f)

    for entry in routes_data:
        route_id = entry["route_id"]
        async with session.begin():
            await _upsert(
                session, Route, Route.route_id, route_id,
                name=entry["name"],
                price_per_seat=entry["price_per_seat"],
                discount_amount=entry.get("discount_amount", "0"),
                is_active=entry.get("is_active", True),
            )
            await session.flush()
            for slot in entry.get("time_slots", []):
                await _upsert(session, TimeSlot, TimeSlot.time_slot_id, slot["time_slot_id"],
                              route_id=route_id, departure_time=slot["departure_time"])
            for point in entry.get("points", []):
                await _upsert(session, PickupPoint, PickupPoint.point_id, point["point_id"],
                              route_id=route_id, name=point["name"],
                              sequence_order=point.get("sequence_order", 0))
        logger.info("[bootstrap] Imported/updated route %s (%s slots, %s points)",
                    route_id, len(entry.get("time_slots", [])), len(entry.get("points", [])))
    return len(routes_data)


async def main(path: str = ROUTES_FILE):
    if not settings.DATABASE_URL or settings.DATABASE_URL == "disabled":
        raise RuntimeError("DATABASE_URL is disabled; nothing to import into")
    engine, session_maker = build_session_maker(settings.DATABASE_URL)
    try:
        async with session_maker() as session:
            count = await import_routes(session, path)
        logger.info("[bootstrap] %s route(s) imported from %s", count, path)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else ROUTES_FILE))
