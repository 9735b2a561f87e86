import pytest

from lootwheel.catalog import RewardCatalog, FungibleReward, NftReward
from lootwheel.errors import ValidationError, NotFoundError
from lootwheel.inventory import InventoryTracker
from lootwheel.models import RewardEntry


def test_list_active_orders_by_price_and_puts_nfts_last(db, add_rewards):
    add_rewards("box-1", [10, 15, 25], prices=[0.05, 0.005, 0.01])
    InventoryTracker(db).deposit("box-1", "MintAAA", "Mad Lad #1"); db.commit()

    entries = RewardCatalog(db).list_active("box-1")

    assert [e.price for e in entries[:3]] == [0.005, 0.01, 0.05]
    assert isinstance(entries[-1], NftReward)
    assert entries[-1].mint_identity == "MintAAA"


def test_inactive_entries_are_not_listed(db, add_rewards):
    rows = add_rewards("box-1", [60, 40])
    rows[1].is_active = False; db.commit()

    entries = RewardCatalog(db).list_active("box-1")

    assert [e.entry_id for e in entries] == [rows[0].id]


def test_scopes_are_isolated(db, add_rewards):
    add_rewards("box-1", [100])
    add_rewards("box-2", [30, 70])

    assert len(RewardCatalog(db).list_active("box-1")) == 1
    assert RewardCatalog(db).total_weight("box-2") == pytest.approx(100.0)


@pytest.mark.parametrize("bad", [-0.01, 100.01, "abc", None, float("nan")])
def test_set_weight_rejects_out_of_range_values(db, add_rewards, bad):
    row = add_rewards("box-1", [100])[0]

    with pytest.raises(ValidationError):
        RewardCatalog(db).set_weight(row.id, bad)
    db.rollback()

    assert db.get(RewardEntry, row.id).weight_percent == 100


def test_set_weight_rounds_to_two_decimals(db, add_rewards):
    row = add_rewards("box-1", [100])[0]

    entry = RewardCatalog(db).set_weight(row.id, 33.335)
    db.commit()

    assert entry.weight_percent == pytest.approx(33.34)


def test_set_weight_unknown_entry(db):
    with pytest.raises(NotFoundError):
        RewardCatalog(db).set_weight(9999, 10)


def test_weight_status_flags_deviation_without_correcting(db, add_rewards):
    add_rewards("box-1", [40, 30, 20])
    catalog = RewardCatalog(db)

    status = catalog.weight_status("box-1")

    assert status.total_weight == pytest.approx(90.0)
    assert status.is_balanced is False
    assert status.deviation == pytest.approx(-10.0)
    assert catalog.total_weight("box-1") == pytest.approx(90.0)


def test_weight_status_within_tolerance_is_balanced(db, add_rewards):
    add_rewards("box-1", [33.33, 33.33, 33.33])

    status = RewardCatalog(db).weight_status("box-1")

    assert status.is_balanced is True


def test_add_entry_rebalances_twenty_entries(db, add_rewards):
    add_rewards("box-1", [5.0] * 20)
    catalog = RewardCatalog(db)

    new_entry = catalog.add_entry("box-1", "SOL", 1.0, 10)
    db.commit()

    others = [e for e in catalog.list_active("box-1") if e.entry_id != new_entry.id]
    assert all(e.weight_percent == pytest.approx(4.5) for e in others)
    assert abs(catalog.total_weight("box-1") - 100) <= 0.01


def test_rebalance_with_unit_scale_factor_leaves_weights_alone(db, add_rewards):
    row = add_rewards("box-1", [95.0])[0]
    catalog = RewardCatalog(db)

    catalog.add_entry("box-1", "SOL", 2.0, 5)
    db.commit()

    assert db.get(RewardEntry, row.id).weight_percent == pytest.approx(95.0)
    assert abs(catalog.total_weight("box-1") - 100) <= 0.01


def test_rebalance_rounding_residual_is_not_redistributed(db, add_rewards):
    rows = add_rewards("box-1", [33.34, 33.33, 33.33])
    catalog = RewardCatalog(db)

    changes = catalog.rebalance_proportionally("box-1", 1)
    db.commit()

    assert [new for _, _, new in changes] == [33.01, 33.00, 33.00]
    total_with_reserved = sum(db.get(RewardEntry, r.id).weight_percent for r in rows) + 1
    assert total_with_reserved == pytest.approx(100.01)
    assert abs(total_with_reserved - 100) <= 0.05


def test_rebalance_mixed_twenty_entries_stays_within_drift_bound(db, add_rewards):
    add_rewards("box-1", [4.0] * 10 + [6.0] * 10)
    catalog = RewardCatalog(db)

    catalog.add_entry("box-1", "SOL", 9.0, 7)
    db.commit()

    assert abs(catalog.total_weight("box-1") - 100) <= 0.05


def test_rebalance_leaves_nft_budget_alone(db, add_rewards):
    add_rewards("box-1", [50.0])
    inventory = InventoryTracker(db)
    inventory.deposit("box-1", "MintAAA"); inventory.deposit("box-1", "MintBBB"); db.commit()
    catalog = RewardCatalog(db, inventory)

    catalog.add_entry("box-1", "SOL", 3.0, 20)
    db.commit()

    weights = sorted(e.weight_percent for e in catalog.snapshot("box-1"))
    assert weights == pytest.approx([20.0, 25.0, 25.0, 30.0])
    assert abs(catalog.total_weight("box-1") - 100) <= 0.01


def test_deposit_after_rebalance_keeps_catalog_balanced(db, add_rewards):
    add_rewards("box-1", [50.0])
    inventory = InventoryTracker(db)
    inventory.deposit("box-1", "MintAAA"); inventory.deposit("box-1", "MintBBB"); db.commit()
    catalog = RewardCatalog(db, inventory)
    catalog.add_entry("box-1", "SOL", 3.0, 20)
    db.commit()

    inventory.deposit("box-1", "MintCCC")
    db.commit()

    assert catalog.total_weight("box-1") == pytest.approx(100.01)
    assert catalog.weight_status("box-1").is_balanced is True


def test_rebalance_cannot_reserve_into_the_nft_budget(db, add_rewards):
    add_rewards("box-1", [50.0])
    InventoryTracker(db).deposit("box-1", "MintAAA"); db.commit()

    with pytest.raises(ValidationError):
        RewardCatalog(db).rebalance_proportionally("box-1", 60)


def test_rebalance_with_nothing_to_scale(db):
    catalog = RewardCatalog(db)

    assert catalog.rebalance_proportionally("empty", 10) == []


def test_add_entry_rejects_duplicates_and_bad_prices(db, add_rewards):
    add_rewards("box-1", [100], prices=[0.01])
    catalog = RewardCatalog(db)

    with pytest.raises(ValidationError):
        catalog.add_entry("box-1", "SOL", 0.01, 5)
    with pytest.raises(ValidationError):
        catalog.add_entry("box-1", "SOL", -1, 5)


def test_deactivate_entry(db, add_rewards):
    row = add_rewards("box-1", [100])[0]
    catalog = RewardCatalog(db)

    catalog.deactivate_entry(row.id)
    db.commit()

    assert catalog.list_active("box-1") == []
    with pytest.raises(NotFoundError):
        catalog.deactivate_entry(424242)


def test_snapshot_entries_are_tagged(db, add_rewards):
    add_rewards("box-1", [50])
    InventoryTracker(db).deposit("box-1", "MintAAA"); db.commit()

    snapshot = RewardCatalog(db).snapshot("box-1")

    assert [type(e) for e in snapshot] == [FungibleReward, NftReward]
    assert snapshot[0].kind == "fungible" and snapshot[1].kind == "nft"
