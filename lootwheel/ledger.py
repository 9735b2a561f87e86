import logging
from dataclasses import dataclass
from datetime import datetime as dt, timezone

from lootwheel.catalog import FungibleReward, NftReward
from lootwheel.errors import NotFoundError, ValidationError
from lootwheel.models import PendingPrize, KIND_FUNGIBLE, KIND_NFT


logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    already_claimed: bool
    prize: PendingPrize


def prize_to_dict(prize: PendingPrize) -> dict:
    return {
        "id": prize.id, "user_id": prize.user_id, "scope": prize.scope, "kind": prize.kind,
        "reward": prize.reward_description, "amount": prize.amount, "mint": prize.mint_identity,
        "is_claimed": prize.is_claimed, "payout_status": prize.payout_status,
        "created_at": prize.created_at.isoformat() if prize.created_at else None,
        "claimed_at": prize.claimed_at.isoformat() if prize.claimed_at else None,
    }


class PrizeLedger:
    """Awarded-but-unclaimed prizes.

    ``is_claimed`` only ever flips false -> true, through a conditional UPDATE, so
    repeated claims (payout retries, double clicks) are harmless.
    """

    def __init__(self, db):
        self.db = db

    def record_pending(self, user_id: str, scope: str, draw) -> PendingPrize:
        entry = draw.entry
        if isinstance(entry, FungibleReward):
            prize = PendingPrize(user_id=user_id, scope=scope, reward_description=entry.description,
                                 kind=KIND_FUNGIBLE, amount=entry.amount, reward_entry_id=entry.entry_id,
                                 draw_value=draw.random_value)
        elif isinstance(entry, NftReward):
            prize = PendingPrize(user_id=user_id, scope=scope, reward_description=entry.description,
                                 kind=KIND_NFT, amount=0.0, mint_identity=entry.mint_identity,
                                 draw_value=draw.random_value)
        else:
            raise TypeError(f"Unknown reward type: {type(entry).__name__}")
        self.db.add(prize); self.db.flush()
        logger.info(f"Pending prize {prize.id} recorded for user {user_id} in '{scope}': {prize.reward_description}")
        return prize

    def get(self, prize_id: int, user_id: str | None = None) -> PendingPrize:
        query = self.db.query(PendingPrize).filter(PendingPrize.id == prize_id)
        if user_id is not None:
            query = query.filter(PendingPrize.user_id == user_id)
        prize = query.first()
        if not prize:
            raise NotFoundError(f"Prize {prize_id} not found.")
        return prize

    def claim(self, prize_id: int, user_id: str | None = None, destination_address: str | None = None) -> ClaimResult:
        prize = self.get(prize_id, user_id)
        if prize.is_claimed:
            return ClaimResult(already_claimed=True, prize=prize)
        now = dt.now(timezone.utc)
        values = {PendingPrize.is_claimed: True, PendingPrize.claimed_at: now,
                  PendingPrize.destination_address: destination_address}
        updated = (self.db.query(PendingPrize)
                   .filter(PendingPrize.id == prize.id, PendingPrize.is_claimed == False)  # noqa: E712
                   .update(values, synchronize_session=False))
        if not updated:
            # A concurrent claim won the flip
            self.db.refresh(prize)
            return ClaimResult(already_claimed=True, prize=prize)
        if prize.kind == KIND_NFT and prize.mint_identity:
            duplicates = (self.db.query(PendingPrize)
                          .filter(PendingPrize.user_id == prize.user_id, PendingPrize.scope == prize.scope,
                                  PendingPrize.mint_identity == prize.mint_identity,
                                  PendingPrize.is_claimed == False)  # noqa: E712
                          .update(values, synchronize_session=False))
            if duplicates:
                logger.warning(f"Claim of prize {prize.id} also closed {duplicates} duplicate pending rows for NFT {prize.mint_identity}.")
        self.db.refresh(prize)
        logger.info(f"Prize {prize.id} claimed by user {prize.user_id}.")
        return ClaimResult(already_claimed=False, prize=prize)

    def list_pending(self, user_id: str, scope: str) -> list:
        rows = (self.db.query(PendingPrize)
                .filter(PendingPrize.user_id == user_id, PendingPrize.scope == scope,
                        PendingPrize.is_claimed == False)  # noqa: E712
                .order_by(PendingPrize.created_at, PendingPrize.id)
                .all())
        seen_mints = set()
        visible = []
        for prize in rows:
            if prize.kind == KIND_NFT:
                if prize.mint_identity in seen_mints:
                    continue
                seen_mints.add(prize.mint_identity)
            visible.append(prize)
        return visible

    def release(self, prize_id: int) -> tuple:
        """Drop an unclaimed NFT prize (and any duplicate rows) so its mint can go back on the wheel."""
        prize = self.get(prize_id)
        if prize.kind != KIND_NFT:
            raise ValidationError(f"Prize {prize_id} is not an NFT prize.")
        if prize.is_claimed:
            raise ValidationError(f"Prize {prize_id} was already claimed and cannot be returned.")
        removed = (self.db.query(PendingPrize)
                   .filter(PendingPrize.scope == prize.scope, PendingPrize.mint_identity == prize.mint_identity,
                           PendingPrize.is_claimed == False)  # noqa: E712
                   .delete(synchronize_session=False))
        logger.info(f"Released {removed} pending row(s) for NFT {prize.mint_identity} in '{prize.scope}'.")
        return prize.scope, prize.mint_identity

    def mark_payout(self, prize_id: int, status: str) -> None:
        (self.db.query(PendingPrize)
         .filter(PendingPrize.id == prize_id)
         .update({PendingPrize.payout_status: status}, synchronize_session=False))
