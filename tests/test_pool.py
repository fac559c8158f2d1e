import numpy as np

from poolsim.config import DAY, SCALE
from poolsim.core import to_units
from poolsim.venues import InMemoryVenue, VenueInfo


def test_first_deposit_splits_by_weight_within_band(controller, pool, funded):
    alice = funded("alice", "USDC", 10_000)
    receipt = pool.deposit(alice, to_units(10_000))

    assert receipt.ok
    assert receipt.amount_out == to_units(10_000)  # bootstrap rate is 1.0
    alloc = pool.allocations()
    band = to_units(10_000) * 2 // 100
    assert abs(alloc["a"] - to_units(6_000)) <= band
    assert abs(alloc["b"] - to_units(4_000)) <= band
    assert sum(alloc.values()) == to_units(10_000)
    assert pool.idle() == 0
    assert controller.wallet(alice).get("USDC") == 0


def test_reweighting_routes_new_deposit_into_underweight_venue(controller, pool, funded):
    alice = funded("alice", "USDC", 10_000)
    bob = funded("bob", "USDC", 10_000)
    assert pool.deposit(alice, to_units(10_000)).ok
    b_before = pool.allocations()["b"]

    controller.clock.advance(14 * DAY)
    ok, reason = controller.update_weights("usdc", {"a": to_units(0.8), "b": to_units(0.2)})
    assert ok, reason
    assert pool.rebalancing_active
    ratio_before = pool.deviation_ratio()

    controller.clock.advance(DAY)
    receipt = pool.deposit(bob, to_units(10_000))

    assert receipt.ok
    assert receipt.meta["rounds"] == 1
    assert pool.allocations()["b"] == b_before
    assert pool.deviation_ratio() <= ratio_before
    assert pool.deviation_ratio() < to_units(0.02)
    assert not pool.rebalancing_active
    reward = receipt.meta["rebalancing_reward"]
    assert reward > 0
    assert controller.wallet(bob).get("GOV") == reward
    assert controller.log.of_type("REBALANCING_REWARD")


def test_withdrawal_from_overweight_venue_is_rewarded_while_active(controller, pool, funded):
    alice = funded("alice", "USDC", 10_000)
    assert pool.deposit(alice, to_units(10_000)).ok
    controller.clock.advance(14 * DAY)
    controller.update_weights("usdc", {"a": to_units(0.8), "b": to_units(0.2)})
    controller.clock.advance(DAY)

    receipt = pool.withdraw(alice, to_units(1))
    assert receipt.ok
    assert receipt.meta["rebalancing_reward"] > 0
    assert pool.rebalancing_active


def test_balanced_pool_pays_no_rebalancing_reward(controller, pool, funded):
    alice = funded("alice", "USDC", 20_000)
    assert pool.deposit(alice, to_units(10_000)).ok
    controller.clock.advance(DAY)
    receipt = pool.deposit(alice, to_units(10_000))
    assert receipt.ok
    assert not pool.rebalancing_active
    assert receipt.meta["rebalancing_reward"] == 0


def test_withdraw_returns_underlying_and_burns_shares(controller, pool, funded):
    alice = funded("alice", "USDC", 10_000)
    pool.deposit(alice, to_units(10_000))

    receipt = pool.withdraw(alice, to_units(2_500))
    assert receipt.ok
    assert receipt.amount_out == to_units(2_500)
    assert pool.share_balance(alice) == to_units(7_500)
    assert controller.wallet(alice).get("USDC") == to_units(2_500)
    assert pool.total_value() == to_units(7_500)


def test_exchange_rate_tracks_venue_value(controller, pool, venues, funded):
    alice = funded("alice", "USDC", 10_000)
    bob = funded("bob", "USDC", 1_000)
    pool.deposit(alice, to_units(10_000))
    for venue in venues.values():
        venue.virtual_price = to_units(1.1)

    assert pool.exchange_rate() == to_units(1.1)
    receipt = pool.deposit(bob, to_units(1_100))
    assert not receipt.ok  # bob only holds 1,000
    receipt = pool.deposit(bob, to_units(1_000))
    assert receipt.ok
    # venue LP minting rounds down by a few base units per hop
    assert abs(receipt.amount_out - to_units(1_000) * SCALE // to_units(1.1)) <= 10


def test_shutdown_pool_refuses_deposits_but_allows_withdrawals(controller, pool, funded):
    alice = funded("alice", "USDC", 10_000)
    pool.deposit(alice, to_units(5_000))
    assert controller.shutdown_pool("usdc") == (True, "ok")
    assert controller.shutdown_pool("usdc") == (False, "already_shutdown")

    receipt = pool.deposit(alice, to_units(1_000))
    assert not receipt.ok
    assert receipt.fail_reason == "pool_shutdown"
    assert pool.withdraw(alice, to_units(5_000)).ok


def test_zero_amount_and_insufficient_balance_are_rejected(pool, funded):
    alice = funded("alice", "USDC", 100)
    assert pool.deposit(alice, 0).fail_reason == "zero_amount"
    assert pool.deposit(alice, to_units(101)).fail_reason == "insufficient_balance"
    assert pool.withdraw(alice, to_units(1)).fail_reason == "insufficient_shares"


def test_slippage_guard_leaves_no_state_change(controller, pool, venues, funded):
    alice = funded("alice", "USDC", 10_000)
    events_before = len(controller.log.events)

    receipt = pool.deposit(alice, to_units(10_000), min_received=to_units(10_001))

    assert not receipt.ok
    assert receipt.fail_reason == "too_much_slippage"
    assert controller.wallet(alice).get("USDC") == to_units(10_000)
    assert pool.total_shares == 0
    assert all(v.lp_balance("usdc") == 0 for v in venues.values())
    assert pool.idle() == 0
    new_events = list(controller.log.events)[events_before:]
    assert [e.event_type for e in new_events] == ["DEPOSIT_FAILED"]


def test_venue_failure_mid_route_rolls_back_earlier_hops(controller, pool, venues, funded):
    alice = funded("alice", "USDC", 10_000)
    venues["b"].fail_next = "deposit"

    receipt = pool.deposit(alice, to_units(10_000))

    assert not receipt.ok
    assert receipt.fail_reason == "venue_error"
    assert venues["a"].lp_balance("usdc") == 0
    assert venues["a"].reserves.get("USDC") == 0
    assert controller.wallet(alice).get("USDC") == to_units(10_000)
    assert pool.share_balance(alice) == 0
    # the armed failure fired once and stays spent after the rollback
    assert venues["b"].fail_next is None
    assert pool.deposit(alice, to_units(10_000)).ok


def test_missing_price_fails_instead_of_valuing_at_zero(controller, pool, funded):
    alice = funded("alice", "USDC", 2_000)
    pool.deposit(alice, to_units(1_000))
    controller.oracle.clear_price("USDC")

    receipt = pool.deposit(alice, to_units(1_000))
    assert not receipt.ok
    assert receipt.fail_reason == "missing_price"
    assert pool.share_balance(alice) == to_units(1_000)


class ReentrantVenue(InMemoryVenue):
    pool = None
    inner = None

    def deposit(self, holder, vault, asset, amount):
        if self.inner is None:
            self.inner = self.pool.deposit("attacker", 1)
        return super().deposit(holder, vault, asset, amount)


def test_reentrant_deposit_from_venue_callback_is_refused(controller, funded):
    pool = controller.create_pool("reentry", "USDC")
    venue = ReentrantVenue(venue_id="evil", lp_token="LP:evil", coins=("USDC",),
                           yield_token="YIELD", clock=controller.clock)
    venue.pool = pool
    controller.adapter.add(venue)
    controller.registry.register(VenueInfo(venue_id="evil", lp_token="LP:evil", coins=("USDC",)))
    controller.oracle.set_lp_pricing("LP:evil", venue, "USDC")
    assert pool.add_venue("evil") == (True, "ok")
    assert controller.update_weights("reentry", {"evil": SCALE}) == (True, "ok")

    funded("attacker", "USDC", 10)
    alice = funded("alice", "USDC", 100)
    assert pool.deposit(alice, to_units(100)).ok
    assert venue.inner is not None
    assert venue.inner.fail_reason == "reentrant_call"
    refused = controller.log.of_type("DEPOSIT_FAILED")
    assert [(e.actor_id, e.meta["reason"]) for e in refused] == [("attacker", "reentrant_call")]


def test_weight_updates_are_validated(controller, pool):
    controller.clock.advance(14 * DAY)
    assert controller.update_weights("usdc", {"a": to_units(0.5), "b": to_units(0.4)}) == \
        (False, "weights_not_normalized")
    assert controller.update_weights("usdc", {"a": SCALE}) == (False, "weights_length_mismatch")
    assert controller.update_weights("usdc", {"a": to_units(0.5), "c": to_units(0.5)}) == \
        (False, "unknown_venue")
    assert controller.update_weights("usdc", [("a", to_units(0.5)), ("a", to_units(0.5))]) == \
        (False, "duplicate_venue")
    assert controller.update_weights("nope", {"a": SCALE}) == (False, "unknown_pool")


def test_weight_updates_are_rate_limited(controller, pool):
    new = {"a": to_units(0.5), "b": to_units(0.5)}
    assert controller.update_weights("usdc", new) == (False, "weight_update_too_soon")
    controller.clock.advance(14 * DAY - 1)
    assert controller.update_weights("usdc", new) == (False, "weight_update_too_soon")
    controller.clock.advance(1)
    assert controller.update_weights("usdc", new) == (True, "ok")


def test_min_delay_is_bounded(controller, pool):
    assert controller.set_weight_update_min_delay(0) == (False, "out_of_range")
    assert controller.set_weight_update_min_delay(33 * DAY) == (False, "out_of_range")
    assert controller.set_weight_update_min_delay(DAY) == (True, "ok")
    controller.clock.advance(DAY)
    assert controller.update_weights("usdc", {"a": to_units(0.5), "b": to_units(0.5)}) == (True, "ok")


def test_weights_always_sum_to_one(controller, pool):
    rng = np.random.default_rng(3)
    for _ in range(20):
        controller.clock.advance(14 * DAY)
        raw = rng.dirichlet([1.0, 1.0])
        a = int(raw[0] * SCALE)
        assert controller.update_weights("usdc", {"a": a, "b": SCALE - a}) == (True, "ok")
        assert sum(pool.weights.values()) == SCALE


def test_add_and_remove_venue(controller, pool, new_venue, funded):
    assert pool.add_venue("a") == (False, "venue_exists")
    assert pool.add_venue("ghost") == (False, "venue_not_registered")
    new_venue("dai-only", "DAI")
    assert pool.add_venue("dai-only") == (False, "underlying_not_supported")

    new_venue("c")
    assert controller.add_venue("usdc", "c") == (True, "ok")
    assert pool.weights["c"] == 0
    assert controller.remove_venue("usdc", "a") == (False, "venue_has_weight")
    assert controller.remove_venue("usdc", "c") == (True, "ok")
    assert "c" not in pool.venue_ids

    alice = funded("alice", "USDC", 1_000)
    pool.deposit(alice, to_units(1_000))
    controller.clock.advance(14 * DAY)
    controller.update_weights("usdc", {"a": SCALE, "b": 0})
    assert controller.remove_venue("usdc", "b") == (False, "venue_has_balance")


def test_parameter_setters_are_bounded(pool):
    assert pool.set_max_deviation(0) == (False, "out_of_range")
    assert pool.set_max_deviation(to_units(0.05)) == (True, "ok")
    assert pool.router.max_deviation == to_units(0.05)
    assert pool.set_depeg_threshold(to_units(0.5)) == (False, "out_of_range")
    assert pool.set_depeg_threshold(to_units(0.05)) == (True, "ok")


def test_cached_total_value_expires(controller, pool, venues, funded):
    alice = funded("alice", "USDC", 1_000)
    pool.deposit(alice, to_units(1_000))
    venues["a"].virtual_price = to_units(2)
    assert pool.cached_total_value() == to_units(1_000)
    controller.clock.advance(3 * DAY + 1)
    assert pool.cached_total_value() == pool.total_value() > to_units(1_000)


def test_allocation_views_after_band_edge_deposit(controller, pool, funded):
    alice = funded("alice", "USDC", 10_000)
    assert pool.deposit(alice, to_units(10_000)).ok

    assert pool.allocations() == {"a": to_units(6_120), "b": to_units(3_880)}
    assert pool.target_allocations() == {"a": to_units(6_000), "b": to_units(4_000)}
    assert pool.total_deviation() == to_units(240)
    assert pool.deviation_ratio() == to_units(0.024)
    # filling each venue to its band edge overshoots the pool-wide 2% limit
    assert not pool.is_balanced()
    assert pool.set_max_deviation(to_units(0.05)) == (True, "ok")
    assert pool.is_balanced()


def test_usd_views_follow_underlying_price(controller, pool, funded):
    alice = funded("alice", "USDC", 10_000)
    assert pool.deposit(alice, to_units(10_000)).ok
    controller.oracle.set_price("USDC", to_units(2))

    assert pool.total_value() == to_units(10_000)
    assert pool.usd_value() == to_units(20_000)
    assert pool.usd_exchange_rate() == 2 * SCALE


def test_add_venue_needs_a_priceable_lp_token(controller, pool):
    controller.registry.register(VenueInfo(venue_id="unpriced", lp_token="LP:unpriced", coins=("USDC",)))
    assert pool.add_venue("unpriced") == (False, "missing_price")
    assert "unpriced" not in pool.venue_ids


def test_weights_only_change_through_the_rate_limited_controller(pool):
    assert not hasattr(pool, "update_weights")


def test_operation_scope_leaves_other_pools_out(controller, make_pool, funded):
    usdc, usdc_venues = make_pool("usdc", "USDC", {"a": 1.0})
    dai, dai_venues = make_pool("dai", "DAI", {"x": 1.0})
    funded("alice", "USDC", 10)

    saved = {id(obj) for obj, _ in controller.transaction(controller.pool_scope(usdc, "alice")).saved}
    assert id(usdc) in saved and id(usdc_venues["a"]) in saved
    assert id(dai) not in saved and id(dai_venues["x"]) not in saved
    assert id(dai.rewards) not in saved
