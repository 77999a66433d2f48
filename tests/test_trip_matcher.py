import asyncio
import json
from datetime import date
from types import SimpleNamespace

import pytest

from core.exceptions import OptimizerUnavailable
from models.enums import GeneratedBy
from services.trip_matcher import (
    ContractViolation, DeterministicGroupingStrategy, FallbackTripMatcher, GroqGroupingStrategy,
    GroupingStrategy, Passenger, build_groups, chunk_sizes, parse_plan, tier_for,
)

DAY = date(2026, 11, 2)


def _passengers(count):
    # boarding sequence cycles 1..5 so pickup ordering is exercised
    return [
        Passenger(subscription_id=f"s{i:03d}", user_id=f"u{i:03d}", boarding_point_id=f"P{i % 5 + 1}",
                  drop_off_point_id="P9", boarding_sequence=i % 5 + 1)
        for i in range(count)
    ]


def _assigned(result):
    return [p.subscription_id for g in result.groups for p in g.passengers]


class _FakeGroq:
    """Stands in for AsyncGroq: chat.completions.create returns `reply`."""

    def __init__(self, reply=None, exc=None, delay=0.0):
        self.calls = 0

        async def create(**kwargs):
            self.calls += 1
            if delay:
                await asyncio.sleep(delay)
            if exc:
                raise exc
            return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])

        self.chat = SimpleNamespace(completions=SimpleNamespace(create=create))


class _Exploding(GroupingStrategy):
    async def group(self, route_id, time_slot_id, service_date, passengers):
        raise RuntimeError("boom")


class _Sleepy(GroupingStrategy):
    async def group(self, route_id, time_slot_id, service_date, passengers):
        await asyncio.sleep(5)


@pytest.mark.parametrize("count, tier", [
    (1, "sedan"), (4, "sedan"), (5, "7_seater"), (7, "7_seater"), (8, "10_seater"), (10, "10_seater"),
    (11, "14_seater"), (14, "14_seater"), (15, "32_seater"), (32, "32_seater"),
])
def test_tier_for(count, tier):
    assert tier_for(count).name == tier


def test_tier_for_rejects_empty_trip():
    with pytest.raises(ValueError):
        tier_for(0)


def test_chunk_sizes():
    assert chunk_sizes(3) == [3]
    assert chunk_sizes(32) == [32]
    assert chunk_sizes(40) == [32, 8]
    assert chunk_sizes(70) == [32, 32, 6]


def test_chunk_sizes_never_leave_a_lone_straggler():
    assert chunk_sizes(33) == [17, 16]
    assert chunk_sizes(34) == [17, 17]
    assert chunk_sizes(35) == [32, 3]
    assert chunk_sizes(65) == [32, 17, 16]
    assert chunk_sizes(33, min_trip_size=1) == [32, 1]
    # a small slot on its own is still one trip
    assert chunk_sizes(2) == [2]


@pytest.mark.asyncio
async def test_deterministic_grouping_of_thirty_three():
    groups = await DeterministicGroupingStrategy().group("R1", "S1", DAY, _passengers(33))

    assert [g.tier.name for g in groups] == ["32_seater", "32_seater"]
    assert [len(g.passengers) for g in groups] == [17, 16]


@pytest.mark.asyncio
async def test_deterministic_grouping_of_forty():
    """40 passengers: one full 32-seater plus a 10-seater for the remaining 8."""
    passengers = _passengers(40)
    groups = await DeterministicGroupingStrategy().group("R1", "S1", DAY, passengers)

    assert [g.tier.name for g in groups] == ["32_seater", "10_seater"]
    assert [len(g.passengers) for g in groups] == [32, 8]
    assigned = [p.subscription_id for g in groups for p in g.passengers]
    assert sorted(assigned) == sorted(p.subscription_id for p in passengers)
    for group in groups:
        keys = [p.pickup_key for p in group.passengers]
        assert keys == sorted(keys)


def test_build_groups_enforces_contract():
    passengers = _passengers(3)
    with pytest.raises(ContractViolation):
        build_groups([passengers[:2]], passengers)
    with pytest.raises(ContractViolation):
        build_groups([passengers, passengers[:1]], passengers)
    with pytest.raises(ContractViolation):
        build_groups([passengers, []], passengers)
    with pytest.raises(ContractViolation):
        build_groups([_passengers(33)], _passengers(33))


def test_parse_plan_tolerates_prose():
    plan = parse_plan('Here you go:\n{"trips": [{"subscription_ids": ["a", "b"], "rationale": "near"}]}\nDone.')
    assert plan.trips[0].subscription_ids == ["a", "b"]
    with pytest.raises(OptimizerUnavailable):
        parse_plan("no json at all")
    with pytest.raises(OptimizerUnavailable):
        parse_plan('{"trips": []}')


@pytest.mark.asyncio
async def test_optimizer_grouping_is_used_when_valid():
    passengers = _passengers(6)
    ids = [p.subscription_id for p in passengers]
    reply = json.dumps({"trips": [
        {"subscription_ids": ids[:3], "rationale": "north side"},
        {"subscription_ids": ids[3:], "rationale": "south side"},
    ]})
    matcher = FallbackTripMatcher(primary=GroqGroupingStrategy(client=_FakeGroq(reply)), timeout_seconds=1)

    result = await matcher.match("R1", "S1", DAY, passengers)

    assert result.generated_by == GeneratedBy.OPTIMIZER
    assert result.fallback_reason is None
    assert [g.tier.name for g in result.groups] == ["sedan", "sedan"]
    assert [g.rationale for g in result.groups] == ["north side", "south side"]
    assert sorted(_assigned(result)) == sorted(ids)


@pytest.mark.asyncio
@pytest.mark.parametrize("primary", [
    GroqGroupingStrategy(client=_FakeGroq(exc=ConnectionError("down"))),
    GroqGroupingStrategy(client=_FakeGroq(reply="not json")),
    GroqGroupingStrategy(client=_FakeGroq(reply='{"trips": [{"subscription_ids": ["s000"]}]}')),
    GroqGroupingStrategy(client=_FakeGroq(reply='{"trips": [{"subscription_ids": ["ghost"]}]}')),
    GroqGroupingStrategy(client=_FakeGroq(reply="{}", delay=5)),
    _Exploding(),
    _Sleepy(),
])
async def test_fallback_never_drops_a_passenger(primary):
    """Errors, timeouts, malformed or incomplete plans all end in the deterministic grouping."""
    passengers = _passengers(9)
    matcher = FallbackTripMatcher(primary=primary, timeout_seconds=0.05)

    result = await matcher.match("R1", "S1", DAY, passengers)

    assert result.generated_by == GeneratedBy.FALLBACK
    assert result.fallback_reason
    assert result.passenger_count == 9
    assert sorted(_assigned(result)) == sorted(p.subscription_id for p in passengers)
    assert [g.tier.name for g in result.groups] == ["10_seater"]


@pytest.mark.asyncio
async def test_missing_api_key_means_fallback():
    matcher = FallbackTripMatcher(primary=GroqGroupingStrategy(client=None))
    result = await matcher.match("R1", "S1", DAY, _passengers(3))
    assert result.generated_by == GeneratedBy.FALLBACK
    assert "GROQ_API_KEY" in result.fallback_reason
