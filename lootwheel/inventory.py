import logging
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from lootwheel.config import NFT_POOL_PERCENT
from lootwheel.errors import InventoryRaceError, NotFoundError, ValidationError
from lootwheel.models import NFTInventoryItem, PendingPrize, KIND_NFT
from lootwheel.weights import round_percent


logger = logging.getLogger(__name__)


def equal_share(budget_percent, count: int) -> Decimal:
    return round_percent(Decimal(str(budget_percent)) / max(1, count))


class InventoryTracker:
    """Which deposited NFTs of a scope can still be drawn.

    Every state change is a conditional UPDATE keyed by (scope, mint) so two
    concurrent spins can never both take the same mint.
    """

    def __init__(self, db, pool_percent=NFT_POOL_PERCENT):
        self.db = db
        self.pool_percent = pool_percent

    def _pending_mints(self, scope):
        return (self.db.query(PendingPrize.mint_identity)
                .filter(PendingPrize.scope == scope, PendingPrize.kind == KIND_NFT,
                        PendingPrize.is_claimed == False,  # noqa: E712
                        PendingPrize.mint_identity.isnot(None)))

    def available_items(self, scope: str) -> list:
        return (self.db.query(NFTInventoryItem)
                .filter(NFTInventoryItem.scope == scope,
                        NFTInventoryItem.is_active == True,  # noqa: E712
                        NFTInventoryItem.is_deposited == True,  # noqa: E712
                        NFTInventoryItem.mint_identity.notin_(self._pending_mints(scope)))
                .order_by(NFTInventoryItem.id)
                .all())

    def available_nfts(self, scope: str) -> set:
        return {item.mint_identity for item in self.available_items(scope)}

    def get_item(self, scope: str, mint_identity: str):
        return (self.db.query(NFTInventoryItem)
                .filter(NFTInventoryItem.scope == scope, NFTInventoryItem.mint_identity == mint_identity)
                .first())

    def current_share(self, scope: str, available_count: int | None = None) -> Decimal:
        """Weight each available NFT of the scope carries right now.

        Shares are derived from the available count when read and never stored, so
        a win only ever writes its own row."""
        count = len(self.available_items(scope)) if available_count is None else available_count
        if count == 0:
            return Decimal('0')
        return equal_share(self.pool_percent, count)

    def deposit(self, scope: str, mint_identity: str, display_name: str | None = None) -> NFTInventoryItem:
        if not scope or not mint_identity:
            raise ValidationError("scope and mint_identity are required.")
        existing = self.get_item(scope, mint_identity)
        if existing:
            if not existing.is_deposited:
                existing.is_deposited = True
                existing.is_active = True
                self.db.flush()
                logger.info(f"NFT {mint_identity} re-deposited into scope '{scope}'.")
            else:
                logger.info(f"NFT {mint_identity} already in scope '{scope}' inventory, not duplicating.")
            return existing
        item = NFTInventoryItem(scope=scope, mint_identity=mint_identity, display_name=display_name,
                                is_active=True, is_deposited=True)
        try:
            with self.db.begin_nested():
                self.db.add(item)
        except IntegrityError:
            # Concurrent deposit of the same mint got there first; only the savepoint is undone
            logger.warning(f"Concurrent deposit of NFT {mint_identity} in scope '{scope}', using existing row.")
            return self.get_item(scope, mint_identity)
        logger.info(f"NFT {mint_identity} deposited into scope '{scope}'.")
        return item

    def mark_won(self, scope: str, mint_identity: str) -> None:
        updated = (self.db.query(NFTInventoryItem)
                   .filter(NFTInventoryItem.scope == scope, NFTInventoryItem.mint_identity == mint_identity,
                           NFTInventoryItem.is_active == True,  # noqa: E712
                           NFTInventoryItem.is_deposited == True)  # noqa: E712
                   .update({NFTInventoryItem.is_active: False}, synchronize_session=False))
        if not updated:
            raise InventoryRaceError(mint_identity)
        logger.info(f"NFT {mint_identity} in scope '{scope}' marked as won.")

    def mark_available(self, scope: str, mint_identity: str) -> Decimal:
        updated = (self.db.query(NFTInventoryItem)
                   .filter(NFTInventoryItem.scope == scope, NFTInventoryItem.mint_identity == mint_identity,
                           NFTInventoryItem.is_deposited == True)  # noqa: E712
                   .update({NFTInventoryItem.is_active: True}, synchronize_session=False))
        if not updated:
            raise NotFoundError(f"NFT {mint_identity} is not deposited in scope '{scope}'.")
        self.db.expire_all()
        share = self.current_share(scope)
        logger.info(f"NFT {mint_identity} returned to scope '{scope}' inventory, each available NFT now {share}%.")
        return share

    def mark_withdrawn(self, scope: str, mint_identity: str) -> None:
        (self.db.query(NFTInventoryItem)
         .filter(NFTInventoryItem.scope == scope, NFTInventoryItem.mint_identity == mint_identity)
         .update({NFTInventoryItem.is_deposited: False, NFTInventoryItem.is_active: False},
                 synchronize_session=False))
