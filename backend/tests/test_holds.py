from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from clinic_booking.config import get_settings
from clinic_booking.errors import SlotUnavailable, StoreUnavailable
from clinic_booking.services.hold_store import InMemoryHoldStore, RedisHoldStore
from clinic_booking.services.holds import HoldManager, slot_key

from conftest import LOCATION, PROVIDER, at


def hold_nine(holds, requester="pat_1"):
    return holds.create_hold(PROVIDER, LOCATION, at(9), at(9, 30), requester)


def test_create_get_and_release(holds, clock):
    hold = hold_nine(holds)

    assert hold.hold_id.startswith("hold_")
    assert hold.created_at == clock.now()
    assert (hold.expires_at - hold.created_at).total_seconds() == 120
    assert holds.get_hold(hold.hold_id) == hold

    holds.release_hold(hold.hold_id)

    assert holds.get_hold(hold.hold_id) is None
    assert hold_nine(holds, "pat_2").requester_id == "pat_2"


def test_unknown_hold_is_none(holds):
    assert holds.get_hold("hold_forged") is None
    holds.release_hold("hold_forged")


def test_second_hold_on_same_slot_fails(holds):
    hold_nine(holds, "pat_1")

    with pytest.raises(SlotUnavailable):
        hold_nine(holds, "pat_2")


def test_concurrent_holds_have_exactly_one_winner(holds):
    def attempt(i):
        try:
            return hold_nine(holds, f"pat_{i}")
        except SlotUnavailable:
            return None

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(attempt, range(50)))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert results.count(None) == 49


def test_expired_hold_disappears_and_frees_the_slot(holds, clock):
    first = hold_nine(holds, "pat_1")

    clock.advance(119)
    assert holds.get_hold(first.hold_id) is not None

    clock.advance(2)
    assert holds.get_hold(first.hold_id) is None

    second = hold_nine(holds, "pat_2")
    assert holds.get_hold(second.hold_id) == second


def test_releasing_a_stale_hold_keeps_the_new_one(holds, clock):
    stale = hold_nine(holds, "pat_1")
    clock.advance(121)
    fresh = hold_nine(holds, "pat_2")

    holds.release_hold(stale.hold_id)

    assert holds.get_hold(fresh.hold_id) == fresh


def test_held_starts_reports_only_held_slots(holds):
    hold_nine(holds)

    held = holds.held_starts(PROVIDER, LOCATION, [at(9), at(9, 30)])

    assert held == {at(9)}


def test_redis_store_uses_atomic_set_with_ttl():
    redis = MagicMock()
    redis.set.return_value = True
    store = RedisHoldStore(redis)

    assert store.create_if_absent("k", "v", 120) is True
    redis.set.assert_called_once_with("k", "v", nx=True, ex=120)

    redis.set.return_value = None
    assert store.create_if_absent("k", "v", 120) is False


def test_redis_store_compare_and_delete_goes_through_script():
    redis = MagicMock()
    script = MagicMock(return_value=1)
    redis.register_script.return_value = script
    store = RedisHoldStore(redis)

    assert store.delete("k", expected="v") is True
    script.assert_called_once_with(keys=["k"], args=["v"])

    redis.delete.return_value = 0
    assert store.delete("k") is False


def test_redis_store_decodes_bytes():
    redis = MagicMock()
    redis.get.return_value = b"value"
    redis.mget.return_value = [b"a", None]
    store = RedisHoldStore(redis)

    assert store.get("k") == "value"
    assert store.get_many(["x", "y"]) == ["a", None]
    assert store.get_many([]) == []


def test_unreachable_redis_never_grants_a_hold():
    redis = MagicMock()
    redis.set.side_effect = RedisConnectionError("connection refused")
    holds = HoldManager(RedisHoldStore(redis))

    with pytest.raises(StoreUnavailable):
        hold_nine(holds)


def test_unreachable_redis_on_read_is_not_a_missing_hold():
    redis = MagicMock()
    redis.get.side_effect = RedisConnectionError("connection refused")
    holds = HoldManager(RedisHoldStore(redis))

    with pytest.raises(StoreUnavailable):
        holds.get_hold("hold_x")


def test_half_created_hold_is_rolled_back():
    redis = MagicMock()
    redis.set.side_effect = [True, RedisConnectionError("gone")]
    script = MagicMock(return_value=1)
    redis.register_script.return_value = script
    holds = HoldManager(RedisHoldStore(redis))

    with pytest.raises(StoreUnavailable):
        hold_nine(holds)

    script.assert_called_once()
    assert script.call_args.kwargs["keys"] == [slot_key(PROVIDER, LOCATION, at(9))]


def test_default_ttl_comes_from_settings(monkeypatch):
    monkeypatch.setenv("BOOKING_HOLD_TTL_SECONDS", "45")
    get_settings.cache_clear()
    try:
        assert HoldManager(InMemoryHoldStore()).ttl_seconds == 45
    finally:
        get_settings.cache_clear()
