import pytest

from poolsim.config import DAY, SCALE
from poolsim.core import to_units
from poolsim.staking import STAKER_ACCOUNT
from poolsim.venues import InMemoryVenue, VenueInfo

YIELD_RATE = 10**12  # 1e-6 YIELD per LP unit per second


def test_deposit_and_stake_moves_shares_to_staker(controller, pool, funded):
    alice = funded("alice", "USDC", 1_000)
    receipt = pool.deposit(alice, to_units(1_000), stake=True)

    assert receipt.ok
    assert pool.share_balance(alice) == 0
    assert pool.share_balance(STAKER_ACCOUNT) == to_units(1_000)
    assert controller.staker.staked_of(alice, "usdc") == to_units(1_000)
    assert pool.rewards.balance_of(alice) > 0


def test_staked_inflation_can_be_claimed(controller, pool, funded):
    alice = funded("alice", "USDC", 10_000)
    pool.deposit(alice, to_units(10_000), stake=True)
    controller.advance(DAY)

    expected = controller.inflation.current_inflation_rate() * DAY
    receipt = controller.staker.claim_rewards(alice, "usdc")

    assert receipt.ok
    got = controller.wallet(alice).get("GOV")
    assert 0 < got <= expected
    assert expected - got <= 10**6
    assert pool.rewards.claimable(alice)["GOV"] == 0


def test_rewards_follow_boosted_stake(controller, pool, funded):
    alice = funded("alice", "USDC", 10_000)
    bob = funded("bob", "USDC", 10_000)
    pool.deposit(alice, to_units(9_000), stake=True)
    pool.deposit(bob, to_units(1_000), stake=True)
    controller.advance(30 * DAY)
    controller.staker.update_boost(alice, "usdc")
    controller.staker.update_boost(bob, "usdc")
    controller.advance(DAY)

    a = pool.rewards.claimable(alice)["GOV"]
    b = pool.rewards.claimable(bob)["GOV"]
    assert a > b > 0


def test_unstake_returns_shares_and_settles_first(controller, pool, funded):
    alice = funded("alice", "USDC", 1_000)
    pool.deposit(alice, to_units(1_000), stake=True)
    controller.advance(DAY)
    owed_before = pool.rewards.claimable(alice)["GOV"]

    receipt = controller.staker.unstake(alice, "usdc", to_units(1_000))

    assert receipt.ok
    assert pool.share_balance(alice) == to_units(1_000)
    assert controller.staker.staked_of(alice, "usdc") == 0
    assert pool.rewards.balance_of(alice) == 0
    assert pool.rewards.claimable(alice)["GOV"] == owed_before


def test_unstake_more_than_staked_fails(controller, pool, funded):
    alice = funded("alice", "USDC", 1_000)
    pool.deposit(alice, to_units(1_000), stake=True)
    receipt = controller.staker.unstake(alice, "usdc", to_units(1_001))
    assert receipt.fail_reason == "insufficient_stake"
    assert controller.staker.staked_of(alice, "usdc") == to_units(1_000)
    assert controller.staker.update_boost("bob", "usdc").fail_reason == "nothing_staked"
    assert controller.staker.stake(alice, "nope", 1).fail_reason == "unknown_pool"


def test_unstake_and_withdraw_in_one_operation(controller, pool, funded):
    alice = funded("alice", "USDC", 1_000)
    pool.deposit(alice, to_units(1_000), stake=True)

    receipt = pool.unstake_and_withdraw(alice, to_units(400))

    assert receipt.ok
    assert controller.wallet(alice).get("USDC") == to_units(400)
    assert controller.staker.staked_of(alice, "usdc") == to_units(600)


def test_venue_yield_is_skimmed_to_lockers(controller, make_pool, funded):
    pool, _ = make_pool("usdc", "USDC", {"a": 1.0}, yield_rate=YIELD_RATE)
    bob = funded("bob", "GOV", 1_000)
    assert controller.locker.lock(bob, to_units(1_000), 120 * DAY).ok
    alice = funded("alice", "USDC", 10_000)
    pool.deposit(alice, to_units(10_000), stake=True)

    controller.advance(DAY)
    total_yield = to_units(10_000) * YIELD_RATE * DAY // 10**18
    assert controller.staker.claim_rewards(alice, "usdc").ok
    assert controller.locker.claim_fees(bob).ok

    alice_yield = controller.wallet(alice).get("YIELD")
    bob_yield = controller.wallet(bob).get("YIELD")
    fee = total_yield // 10
    assert abs(alice_yield - (total_yield - fee)) <= 10**6
    assert abs(bob_yield - fee) <= 10**6
    assert alice_yield + bob_yield <= total_yield


def test_pool_ledger_never_promises_more_than_it_holds(controller, make_pool, funded):
    pool, _ = make_pool("usdc", "USDC", {"a": 0.5, "b": 0.5}, yield_rate=YIELD_RATE)
    accounts = [funded(f"lp{i}", "USDC", 5_000) for i in range(4)]
    for i, account in enumerate(accounts):
        pool.deposit(account, to_units(1_000 * (i + 1)), stake=True)
        controller.advance(DAY * (i + 1))
    controller.staker.claim_rewards(accounts[0], "usdc")
    controller.staker.unstake(accounts[1], "usdc", to_units(500))
    controller.advance(3 * DAY)

    ledger = pool.rewards
    for kind in ledger.kinds:
        owed = sum(ledger.claimable(a)[kind] for a in accounts)
        assert owed <= ledger.reserves(kind)


class HalfPayVenue(InMemoryVenue):
    """Reports the full pending yield but only pays out half of it."""

    def claim_yield(self, holder, vault):
        paid = super().claim_yield(holder, vault)
        withheld = paid - paid // 2
        vault.sub(self.yield_token, withheld)
        return paid - withheld


def test_short_yield_payment_fails_claim_without_side_effects(controller, funded):
    pool = controller.create_pool("usdc", "USDC")
    venue = HalfPayVenue(venue_id="half", lp_token="LP:half", coins=("USDC",), yield_token="YIELD",
                         clock=controller.clock, yield_rate=YIELD_RATE)
    controller.adapter.add(venue)
    controller.registry.register(VenueInfo(venue_id="half", lp_token="LP:half", coins=("USDC",)))
    controller.oracle.set_lp_pricing("LP:half", venue, "USDC")
    assert pool.add_venue("half") == (True, "ok")
    assert controller.update_weights("usdc", {"half": SCALE}) == (True, "ok")
    alice = funded("alice", "USDC", 10_000)
    assert pool.deposit(alice, to_units(10_000), stake=True).ok
    controller.advance(DAY)
    pending = venue.pending_yield("usdc")

    receipt = controller.staker.claim_rewards(alice, "usdc")

    assert not receipt.ok
    assert receipt.fail_reason == "insufficient_reserves"
    assert controller.inflation.total_minted() == 0
    assert pool.rewards.vault.get("GOV") == 0
    assert controller.wallet(alice).get("GOV") == 0
    assert controller.wallet(alice).get("YIELD") == 0
    assert venue.pending_yield("usdc") == pending > 0
    assert [e.meta["reason"] for e in controller.log.of_type("CLAIM_FAILED")] == ["insufficient_reserves"]


def test_unexpected_error_is_raised_after_rollback(controller, funded):
    bob = funded("bob", "GOV", 10)
    wallet = controller.wallet(bob)

    def run():
        wallet.sub("GOV", to_units(10))
        raise KeyError("boom")

    with pytest.raises(KeyError):
        controller.execute("TEST", bob, None, run, scope=[wallet])
    assert wallet.get("GOV") == to_units(10)
