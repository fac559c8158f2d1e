import pytest

from poolsim.config import SCALE
from poolsim.core import OperationFailed, Vault, to_units
from poolsim.ledger import CompositeSource, FeeStream, StreamingRewardLedger

R = "REWARD"


def _total_claimable(ledger, accounts, kind=R):
    return sum(ledger.claimable(a)[kind] for a in accounts)


def test_rewards_split_by_balance(source):
    ledger = StreamingRewardLedger("test", [R], source)
    ledger.set_balance("alice", 100)
    ledger.set_balance("bob", 300)

    source.add(R, 1_000)
    assert ledger.claimable("alice")[R] == 250
    assert ledger.claimable("bob")[R] == 750


def test_earnings_before_any_stake_wait_for_first_staker(source):
    ledger = StreamingRewardLedger("test", [R], source)
    source.add(R, 500)
    ledger.checkpoint()
    assert ledger.accumulators[R] == 0

    ledger.set_balance("alice", 100)
    assert ledger.claimable("alice")[R] == 500


def test_balance_change_settles_past_accrual_first(source):
    ledger = StreamingRewardLedger("test", [R], source)
    ledger.set_balance("alice", 100)
    source.add(R, 100)
    ledger.set_balance("bob", 100)
    source.add(R, 100)

    assert ledger.claimable("alice")[R] == 150
    assert ledger.claimable("bob")[R] == 50


def test_claim_harvests_and_pays_out(source):
    ledger = StreamingRewardLedger("test", [R], source)
    ledger.set_balance("alice", to_units(3))
    source.add(R, to_units(90))
    wallet = Vault()

    paid = ledger.claim("alice", wallet)

    assert paid == {R: to_units(90)}
    assert wallet.get(R) == to_units(90)
    assert ledger.claimable("alice")[R] == 0
    assert ledger.claimed_by("alice", R) == to_units(90)
    assert ledger.claim("alice", wallet) == {}


def test_claim_raises_if_source_cannot_cover():
    class StingySource:
        def earned(self, kind):
            return 100

        def harvest(self, kind, vault):
            return 0

    ledger = StreamingRewardLedger("test", [R], StingySource())
    ledger.set_balance("alice", 1)
    with pytest.raises(OperationFailed) as excinfo:
        ledger.claim("alice", Vault())
    assert excinfo.value.reason == "insufficient_reserves"


def test_claimable_never_exceeds_reserves(source):
    ledger = StreamingRewardLedger("test", [R], source)
    accounts = ["a", "b", "c"]
    wallet = Vault()
    steps = [
        ("a", 7), ("b", 13), ("earn", 1_001), ("c", 5), ("earn", 333),
        ("a", 0), ("claim", "b"), ("earn", 10**6 + 7), ("b", 2), ("claim", "c"), ("earn", 1),
    ]
    for op, arg in steps:
        if op == "earn":
            source.add(R, arg)
        elif op == "claim":
            ledger.claim(arg, wallet)
        else:
            ledger.set_balance(op, arg)
        assert _total_claimable(ledger, accounts) <= ledger.reserves(R)


def test_fee_skim_feeds_a_second_ledger(source):
    pool_ledger = StreamingRewardLedger("pool", [R], source, fee_rates={R: to_units(0.1)})
    locker_source = CompositeSource([FeeStream(pool_ledger)])
    locker = StreamingRewardLedger("locker", [R], locker_source)
    pool_ledger.set_balance("alice", SCALE)
    locker.set_balance("bob", SCALE)

    source.add(R, to_units(1_000))
    assert pool_ledger.claimable("alice")[R] == to_units(900)
    assert pool_ledger.earned(R) == to_units(100)
    assert locker.claimable("bob")[R] == to_units(100)

    bob, alice = Vault(), Vault()
    locker.claim("bob", bob)
    pool_ledger.claim("alice", alice)
    assert bob.get(R) == to_units(100)
    assert alice.get(R) == to_units(900)
    assert pool_ledger.fees_paid[R] == to_units(100)


def test_fee_applies_only_to_configured_kinds(source):
    ledger = StreamingRewardLedger("pool", ["GOV", "YIELD"], source, fee_rates={"YIELD": to_units(0.5)})
    ledger.set_balance("alice", SCALE)
    source.add("GOV", 100)
    source.add("YIELD", 100)
    assert ledger.claimable("alice") == {"GOV": 100, "YIELD": 50}
    assert ledger.earned("GOV") == 0
    assert ledger.earned("YIELD") == 50


def test_zero_balance_account_keeps_unclaimed_rewards(source):
    ledger = StreamingRewardLedger("test", [R], source)
    ledger.set_balance("alice", 10)
    source.add(R, 40)
    ledger.set_balance("alice", 0)
    source.add(R, 60)  # nobody staked, waits

    assert ledger.claimable("alice")[R] == 40
    assert "alice" in ledger.accounts
    ledger.set_balance("bob", 10)
    assert ledger.claimable("bob")[R] == 60


def test_ledger_needs_a_kind(source):
    with pytest.raises(ValueError):
        StreamingRewardLedger("empty", [], source)
    ledger = StreamingRewardLedger("test", [R], source)
    with pytest.raises(ValueError):
        ledger.set_balance("alice", -1)
