"""
Trip matcher: groups one slot's bookings into vehicle-sized trips.

Two strategies satisfy the same contract:
- GroqGroupingStrategy: asks an LLM (Groq chat completions) for a grouping,
  returned as JSON and validated with pydantic. Unreliable by nature.
- DeterministicGroupingStrategy: pickup order (boarding point
  sequence_order, then user id), cut into tier-sized chunks.

FallbackTripMatcher runs the optimizer under OPTIMIZER_TIMEOUT_SECONDS and
uses the deterministic strategy on any timeout, error or contract
violation, so every call ends in a valid grouping.

Contract for every grouping:
- every passenger appears in exactly one trip
- no trip is empty or exceeds its vehicle capacity
- the vehicle tier is the smallest tier that seats the group
- passengers inside a trip are in pickup order
"""
import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Sequence

from groq import AsyncGroq
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from config.settings import settings
from core.exceptions import OptimizerUnavailable
from models.enums import GeneratedBy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VehicleTier:
    name: str
    capacity: int


VEHICLE_TIERS = (
    VehicleTier("sedan", 4),
    VehicleTier("7_seater", 7),
    VehicleTier("10_seater", 10),
    VehicleTier("14_seater", 14),
    VehicleTier("32_seater", 32),
)
LARGEST_TIER = VEHICLE_TIERS[-1]


def tier_for(passenger_count: int) -> VehicleTier:
    """Smallest tier seating `passenger_count` (1-4 sedan ... 15+ 32-seater)."""
    if passenger_count < 1:
        raise ValueError("A trip needs at least one passenger")
    for tier in VEHICLE_TIERS:
        if passenger_count <= tier.capacity:
            return tier
    return LARGEST_TIER


def chunk_sizes(passenger_count: int, min_trip_size: Optional[int] = None) -> list[int]:
    """
    Full largest-tier trips first, then one trip for the remainder.

    A remainder smaller than `min_trip_size` is not sent out alone: it is
    pooled with the last full trip and the two are split evenly (33 -> 17 + 16).
    """
    if min_trip_size is None:
        min_trip_size = settings.MIN_PASSENGERS_PER_TRIP
    sizes = []
    remaining = passenger_count
    while remaining > LARGEST_TIER.capacity:
        sizes.append(LARGEST_TIER.capacity)
        remaining -= LARGEST_TIER.capacity
    if remaining and sizes and remaining < min_trip_size:
        pooled = sizes.pop() + remaining
        sizes.extend([pooled - pooled // 2, pooled // 2])
    elif remaining:
        sizes.append(remaining)
    return sizes


@dataclass(frozen=True)
class Passenger:
    subscription_id: str
    user_id: str
    boarding_point_id: str
    drop_off_point_id: str
    boarding_sequence: int = 0
    payment_method: str = "online"

    @property
    def pickup_key(self):
        return (self.boarding_sequence, self.user_id, self.subscription_id)


@dataclass
class TripGroup:
    tier: VehicleTier
    passengers: List[Passenger]
    rationale: Optional[str] = None


@dataclass
class MatchResult:
    groups: List[TripGroup]
    generated_by: GeneratedBy
    fallback_reason: Optional[str] = None
    passenger_count: int = field(init=False)

    def __post_init__(self):
        self.passenger_count = sum(len(g.passengers) for g in self.groups)


class ContractViolation(Exception):
    pass


def build_groups(groups: Sequence[Sequence[Passenger]], passengers: Sequence[Passenger],
                 rationales: Optional[Sequence[Optional[str]]] = None) -> List[TripGroup]:
    """Check a raw grouping against the contract and attach vehicle tiers."""
    expected = {p.subscription_id for p in passengers}
    seen = set()
    result = []
    for index, group in enumerate(groups):
        if not group:
            raise ContractViolation(f"trip {index} is empty")
        if len(group) > LARGEST_TIER.capacity:
            raise ContractViolation(f"trip {index} has {len(group)} passengers, above {LARGEST_TIER.capacity}")
        for passenger in group:
            if passenger.subscription_id in seen:
                raise ContractViolation(f"passenger {passenger.subscription_id} assigned twice")
            seen.add(passenger.subscription_id)
        rationale = rationales[index] if rationales else None
        result.append(TripGroup(
            tier=tier_for(len(group)),
            passengers=sorted(group, key=lambda p: p.pickup_key),
            rationale=rationale,
        ))
    missing = expected - seen
    if missing:
        raise ContractViolation(f"{len(missing)} passenger(s) not assigned")
    unknown = seen - expected
    if unknown:
        raise ContractViolation(f"{len(unknown)} unknown passenger(s) assigned")
    return result


class GroupingStrategy(ABC):
    name = "base"

    @abstractmethod
    async def group(self, route_id: str, time_slot_id: str, service_date: date,
                    passengers: Sequence[Passenger]) -> List[TripGroup]:
        ...


class DeterministicGroupingStrategy(GroupingStrategy):
    name = GeneratedBy.FALLBACK.value

    async def group(self, route_id, time_slot_id, service_date, passengers):
        ordered = sorted(passengers, key=lambda p: p.pickup_key)
        groups, start = [], 0
        for size in chunk_sizes(len(ordered)):
            groups.append(ordered[start:start + size])
            start += size
        rationale = "Grouped by boarding point order"
        return build_groups(groups, passengers, [rationale] * len(groups))


class OptimizerTrip(BaseModel):
    subscription_ids: List[str] = Field(min_length=1)
    rationale: Optional[str] = None


class OptimizerPlan(BaseModel):
    trips: List[OptimizerTrip] = Field(min_length=1)


def parse_plan(text: str) -> OptimizerPlan:
    """Parse the model's JSON reply; tolerate prose around the JSON object."""
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, flags=re.S)
        if not match:
            raise OptimizerUnavailable("optimizer reply contains no JSON object")
        try:
            decoded = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise OptimizerUnavailable(f"optimizer reply is not valid JSON: {e}")
    try:
        return OptimizerPlan.model_validate(decoded)
    except PydanticValidationError as e:
        raise OptimizerUnavailable(f"optimizer reply failed schema validation: {e.error_count()} error(s)")


class GroqGroupingStrategy(GroupingStrategy):
    name = GeneratedBy.OPTIMIZER.value

    def __init__(self, client: Optional[AsyncGroq] = None, model: Optional[str] = None):
        self.model = model or settings.GROQ_MODEL
        self.client = client
        if self.client is None and settings.GROQ_API_KEY:
            self.client = AsyncGroq(api_key=settings.GROQ_API_KEY)

    def build_prompt(self, route_id, time_slot_id, service_date, passengers) -> str:
        rows = [
            {
                "subscription_id": p.subscription_id,
                "boarding_point_id": p.boarding_point_id,
                "boarding_sequence": p.boarding_sequence,
                "drop_off_point_id": p.drop_off_point_id,
            }
            for p in passengers
        ]
        tiers = ", ".join(f"{t.name}={t.capacity}" for t in VEHICLE_TIERS)
        return (
            "You group carpool passengers into vehicles for one departure.\n"
            f"Route {route_id}, time slot {time_slot_id}, date {service_date.isoformat()}.\n"
            f"Vehicle capacities: {tiers}. A trip may not exceed {LARGEST_TIER.capacity} passengers.\n"
            "Keep passengers with nearby boarding points together and use as few vehicles as possible.\n"
            "Every subscription_id must appear in exactly one trip.\n"
            'Return ONLY JSON: {"trips": [{"subscription_ids": ["..."], "rationale": "..."}]}\n\n'
            f"PASSENGERS:\n{json.dumps(rows)}"
        )

    async def group(self, route_id, time_slot_id, service_date, passengers):
        if self.client is None:
            raise OptimizerUnavailable("GROQ_API_KEY is not configured")
        prompt = self.build_prompt(route_id, time_slot_id, service_date, passengers)
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0.0,
                response_format={"type": "json_object"},
            )
            text = resp.choices[0].message.content
        except Exception as e:
            raise OptimizerUnavailable(f"optimizer call failed: {type(e).__name__}: {e}")
        if not text:
            raise OptimizerUnavailable("optimizer returned an empty reply")

        plan = parse_plan(text)
        by_id = {p.subscription_id: p for p in passengers}
        groups, rationales = [], []
        for trip in plan.trips:
            unknown = [sid for sid in trip.subscription_ids if sid not in by_id]
            if unknown:
                raise OptimizerUnavailable(f"optimizer invented subscription ids: {unknown[:3]}")
            groups.append([by_id[sid] for sid in trip.subscription_ids])
            rationales.append((trip.rationale or "")[:500] or None)
        try:
            return build_groups(groups, passengers, rationales)
        except ContractViolation as e:
            raise OptimizerUnavailable(f"optimizer grouping rejected: {e}")


class FallbackTripMatcher:
    """Optimizer first (bounded by a timeout), deterministic grouping on any failure."""

    def __init__(self, primary: Optional[GroupingStrategy] = None,
                 fallback: Optional[GroupingStrategy] = None,
                 timeout_seconds: Optional[float] = None):
        self.primary = primary
        self.fallback = fallback or DeterministicGroupingStrategy()
        self.timeout_seconds = timeout_seconds or settings.OPTIMIZER_TIMEOUT_SECONDS

    async def match(self, route_id: str, time_slot_id: str, service_date: date,
                    passengers: Sequence[Passenger]) -> MatchResult:
        reason = "optimizer disabled"
        if self.primary is not None:
            try:
                groups = await asyncio.wait_for(
                    self.primary.group(route_id, time_slot_id, service_date, passengers),
                    timeout=self.timeout_seconds,
                )
                return MatchResult(groups=groups, generated_by=GeneratedBy.OPTIMIZER)
            except asyncio.TimeoutError:
                reason = f"optimizer timed out after {self.timeout_seconds}s"
            except OptimizerUnavailable as e:
                reason = e.detail
            except Exception as e:
                reason = f"optimizer crashed: {type(e).__name__}: {e}"
            logger.warning("Fallback grouping for %s/%s on %s: %s", route_id, time_slot_id, service_date, reason)

        groups = await self.fallback.group(route_id, time_slot_id, service_date, passengers)
        return MatchResult(groups=groups, generated_by=GeneratedBy.FALLBACK, fallback_reason=reason)


def default_matcher() -> FallbackTripMatcher:
    return FallbackTripMatcher(primary=GroqGroupingStrategy())
