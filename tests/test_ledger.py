import pytest

from lootwheel.catalog import FungibleReward, NftReward
from lootwheel.errors import NotFoundError, ValidationError
from lootwheel.ledger import PrizeLedger, prize_to_dict
from lootwheel.models import PendingPrize
from lootwheel.selector import Draw


def fungible_draw(amount=0.02, entry_id=None, value=0.25):
    entry = FungibleReward(entry_id=entry_id, scope="box-1", display_name="SOL", amount=amount, weight_percent=10)
    return Draw(entry=entry, random_value=value, total_weight=100.0)


def nft_draw(mint="MintAAA", value=0.9):
    entry = NftReward(item_id=1, scope="box-1", mint_identity=mint, display_name="Lad #1", weight_percent=50)
    return Draw(entry=entry, random_value=value, total_weight=100.0)


def test_record_pending_fungible(db):
    prize = PrizeLedger(db).record_pending("alice", "box-1", fungible_draw())
    db.commit()

    assert prize.kind == "fungible"
    assert prize.amount == pytest.approx(0.02)
    assert prize.reward_description == "0.02 SOL"
    assert prize.draw_value == pytest.approx(0.25)
    assert prize.is_claimed is False
    assert prize.payout_status == "not_requested"


def test_record_pending_nft(db):
    prize = PrizeLedger(db).record_pending("alice", "box-1", nft_draw())
    db.commit()

    data = prize_to_dict(prize)
    assert data["kind"] == "nft"
    assert data["mint"] == "MintAAA"
    assert data["amount"] == 0.0


def test_record_pending_rejects_unknown_entry(db):
    with pytest.raises(TypeError):
        PrizeLedger(db).record_pending("alice", "box-1", Draw(entry=object(), random_value=0.1, total_weight=1.0))


def test_claim_is_idempotent(db):
    ledger = PrizeLedger(db)
    prize = ledger.record_pending("alice", "box-1", fungible_draw())
    db.commit()

    first = ledger.claim(prize.id, user_id="alice", destination_address="Wallet111")
    db.commit()
    second = ledger.claim(prize.id, user_id="alice")
    db.commit()

    assert first.already_claimed is False
    assert second.already_claimed is True
    claimed = db.get(PendingPrize, prize.id)
    assert claimed.is_claimed is True
    assert claimed.claimed_at is not None
    assert claimed.destination_address == "Wallet111"


def test_claim_unknown_prize(db):
    with pytest.raises(NotFoundError):
        PrizeLedger(db).claim(999, user_id="alice")


def test_cannot_claim_someone_elses_prize(db):
    ledger = PrizeLedger(db)
    prize = ledger.record_pending("alice", "box-1", fungible_draw())
    db.commit()

    with pytest.raises(NotFoundError):
        ledger.claim(prize.id, user_id="mallory")
    assert db.get(PendingPrize, prize.id).is_claimed is False


def test_duplicate_nft_rows_show_once_and_claim_together(db):
    ledger = PrizeLedger(db)
    first = ledger.record_pending("alice", "box-1", nft_draw())
    ledger.record_pending("alice", "box-1", nft_draw())
    db.commit()

    pending = ledger.list_pending("alice", "box-1")
    assert [p.id for p in pending] == [first.id]

    ledger.claim(first.id, user_id="alice")
    db.commit()

    assert ledger.list_pending("alice", "box-1") == []
    assert db.query(PendingPrize).filter(PendingPrize.is_claimed == False).count() == 0  # noqa: E712


def test_fungible_rows_are_never_collapsed(db):
    ledger = PrizeLedger(db)
    ledger.record_pending("alice", "box-1", fungible_draw())
    ledger.record_pending("alice", "box-1", fungible_draw())
    ledger.record_pending("bob", "box-1", fungible_draw())
    ledger.record_pending("alice", "box-2", fungible_draw())
    db.commit()

    assert len(ledger.list_pending("alice", "box-1")) == 2


def test_release_deletes_every_unclaimed_row_for_the_mint(db):
    ledger = PrizeLedger(db)
    prize = ledger.record_pending("alice", "box-1", nft_draw())
    ledger.record_pending("alice", "box-1", nft_draw())
    db.commit()

    assert ledger.release(prize.id) == ("box-1", "MintAAA")
    db.commit()

    assert db.query(PendingPrize).count() == 0


def test_release_rejects_fungible_and_claimed_prizes(db):
    ledger = PrizeLedger(db)
    coins = ledger.record_pending("alice", "box-1", fungible_draw())
    nft = ledger.record_pending("alice", "box-1", nft_draw())
    db.commit()
    ledger.claim(nft.id)
    db.commit()

    with pytest.raises(ValidationError):
        ledger.release(coins.id)
    with pytest.raises(ValidationError):
        ledger.release(nft.id)


def test_mark_payout(db):
    ledger = PrizeLedger(db)
    prize = ledger.record_pending("alice", "box-1", fungible_draw())
    db.commit()

    ledger.mark_payout(prize.id, "failed")
    db.commit()
    db.expire_all()

    assert db.get(PendingPrize, prize.id).payout_status == "failed"
