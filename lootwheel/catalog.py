import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import ClassVar

from lootwheel.config import WEIGHT_TOLERANCE
from lootwheel.errors import ValidationError, NotFoundError
from lootwheel.inventory import InventoryTracker
from lootwheel.models import RewardEntry, KIND_FUNGIBLE, KIND_NFT
from lootwheel.weights import HUNDRED, to_percent, round_percent, to_amount


logger = logging.getLogger(__name__)


# --- Catalog entries handed to the selector ---
@dataclass(frozen=True)
class FungibleReward:
    kind: ClassVar[str] = KIND_FUNGIBLE
    entry_id: int
    scope: str
    display_name: str
    amount: float
    weight_percent: float

    @property
    def sort_key(self):
        return (0, self.entry_id)

    @property
    def price(self):
        return self.amount

    @property
    def description(self):
        return f"{self.amount:g} {self.display_name}"

    def to_dict(self):
        return {"id": self.entry_id, "kind": self.kind, "scope": self.scope, "name": self.display_name,
                "amount": self.amount, "percentage": self.weight_percent}


@dataclass(frozen=True)
class NftReward:
    kind: ClassVar[str] = KIND_NFT
    item_id: int
    scope: str
    mint_identity: str
    display_name: str
    weight_percent: float
    amount: float = field(default=0.0)

    @property
    def sort_key(self):
        return (1, self.item_id)

    @property
    def price(self):
        return None

    @property
    def description(self):
        return f"NFT {self.display_name or self.mint_identity} ({self.mint_identity})"

    def to_dict(self):
        return {"id": self.item_id, "kind": self.kind, "scope": self.scope, "name": self.display_name,
                "mint": self.mint_identity, "percentage": self.weight_percent}


@dataclass
class CatalogView:
    scope: str
    entries: list
    total_weight: float
    is_balanced: bool
    deviation: float

    def to_dict(self):
        return {"scope": self.scope, "rewards": [e.to_dict() for e in self.entries],
                "total_percentage": self.total_weight, "is_balanced": self.is_balanced,
                "deviation": self.deviation}


def _listing_key(entry):
    # Fungible tiers by price, NFTs after them, ties by id
    return (entry.price is None, entry.price or 0.0, entry.sort_key)


class RewardCatalog:
    """Weighted list of everything a scope's wheel can award.

    Fungible tiers live in ``reward_entries``; NFTs come from the inventory and are
    only listed while they can still be won. Weights are percentages and the active
    set of a scope should sum to 100. Deviation is reported through
    ``weight_status`` and only corrected by ``rebalance_proportionally``.
    """

    def __init__(self, db, inventory: InventoryTracker | None = None):
        self.db = db
        self.inventory = inventory or InventoryTracker(db)

    def _fungible_rows(self, scope):
        return (self.db.query(RewardEntry)
                .filter(RewardEntry.scope == scope, RewardEntry.is_active == True)  # noqa: E712
                .order_by(RewardEntry.id)
                .all())

    def snapshot(self, scope: str, exclude_mints=()) -> list:
        entries = [FungibleReward(entry_id=row.id, scope=row.scope, display_name=row.display_name,
                                  amount=float(row.unit_price), weight_percent=float(row.weight_percent))
                   for row in self._fungible_rows(scope)]
        excluded = set(exclude_mints)
        items = [item for item in self.inventory.available_items(scope) if item.mint_identity not in excluded]
        share = float(self.inventory.current_share(scope, len(items)))
        for item in items:
            entries.append(NftReward(item_id=item.id, scope=item.scope, mint_identity=item.mint_identity,
                                     display_name=item.display_name or item.mint_identity,
                                     weight_percent=share))
        entries.sort(key=lambda e: e.sort_key)
        return entries

    def list_active(self, scope: str) -> list:
        return sorted(self.snapshot(scope), key=_listing_key)

    def total_weight(self, scope: str) -> float:
        total = sum((Decimal(str(e.weight_percent)) for e in self.snapshot(scope)), Decimal('0'))
        return float(total)

    def weight_status(self, scope: str) -> CatalogView:
        entries = self.list_active(scope)
        total = sum((Decimal(str(e.weight_percent)) for e in entries), Decimal('0'))
        deviation = total - HUNDRED
        is_balanced = abs(deviation) <= Decimal(str(WEIGHT_TOLERANCE))
        if entries and not is_balanced:
            logger.warning(f"Catalog for scope '{scope}' totals {total}% (deviation {deviation:+}%). Admin review needed.")
        return CatalogView(scope=scope, entries=entries, total_weight=float(total),
                           is_balanced=is_balanced, deviation=float(deviation))

    def set_weight(self, entry_id: int, new_percent) -> RewardEntry:
        percent = to_percent(new_percent)
        updated = (self.db.query(RewardEntry)
                   .filter(RewardEntry.id == entry_id)
                   .update({RewardEntry.weight_percent: float(percent)}, synchronize_session=False))
        if not updated:
            raise NotFoundError(f"Reward entry {entry_id} not found.")
        entry = self.db.get(RewardEntry, entry_id)
        self.db.refresh(entry)
        logger.info(f"Reward entry {entry_id} ({entry.scope}) weight set to {percent}%.")
        return entry

    def add_entry(self, scope: str, display_name: str, unit_price, weight_percent, rebalance: bool = True) -> RewardEntry:
        if not scope or not display_name:
            raise ValidationError("scope and display_name are required.")
        percent = to_percent(weight_percent)
        price = to_amount(unit_price, "unit_price")
        duplicate = (self.db.query(RewardEntry)
                     .filter(RewardEntry.scope == scope, RewardEntry.is_active == True,  # noqa: E712
                             RewardEntry.unit_price == price, RewardEntry.display_name == display_name)
                     .first())
        if duplicate:
            raise ValidationError(f"Reward '{display_name}' at {price:g} already exists in scope '{scope}'. Update its weight instead.")
        entry = RewardEntry(scope=scope, kind=KIND_FUNGIBLE, display_name=display_name,
                            unit_price=price, weight_percent=float(percent), is_active=True)
        self.db.add(entry); self.db.flush()
        logger.info(f"Added reward '{display_name}' ({price:g}) to scope '{scope}' with {percent}%.")
        if rebalance:
            self.rebalance_proportionally(scope, percent, exclude_entry_id=entry.id)
        return entry

    def deactivate_entry(self, entry_id: int) -> None:
        updated = (self.db.query(RewardEntry)
                   .filter(RewardEntry.id == entry_id, RewardEntry.is_active == True)  # noqa: E712
                   .update({RewardEntry.is_active: False}, synchronize_session=False))
        if not updated and not self.db.get(RewardEntry, entry_id):
            raise NotFoundError(f"Reward entry {entry_id} not found.")
        logger.info(f"Reward entry {entry_id} deactivated.")

    def rebalance_proportionally(self, scope: str, reserved_percent, exclude_entry_id: int | None = None) -> list:
        """Scale the other active fungible tiers so that they fill what is left
        after ``reserved_percent`` and the NFT budget.

        NFT weights are fixed by the inventory split and are never scaled here.
        Each tier is rounded to two decimals on its own; the rounding residual is
        left in place, so repeated rebalances can drift by a few hundredths.
        """
        reserved = to_percent(reserved_percent)
        rows = [row for row in self._fungible_rows(scope) if row.id != exclude_entry_id]
        nft_count = len(self.inventory.available_items(scope))
        nft_total = self.inventory.current_share(scope, nft_count) * nft_count
        old_total = sum((Decimal(str(row.weight_percent)) for row in rows), Decimal('0'))
        if old_total == 0:
            logger.info(f"Rebalance for scope '{scope}': nothing to scale (existing total is 0).")
            return []
        target = HUNDRED - reserved - nft_total
        if target < 0:
            raise ValidationError(f"Cannot reserve {reserved}% in scope '{scope}': NFTs already take {nft_total}%.")
        factor = target / old_total
        logger.info(f"Rebalancing scope '{scope}': reserving {reserved}% plus {nft_total}% for NFTs, scale factor {factor:.6f} over {len(rows)} tiers.")
        changes = []
        for row in rows:
            old_percent = Decimal(str(row.weight_percent))
            new_percent = round_percent(old_percent * factor)
            # Only overwrite the weight we read; a concurrent admin edit wins
            updated = (self.db.query(RewardEntry)
                       .filter(RewardEntry.id == row.id, RewardEntry.weight_percent == row.weight_percent)
                       .update({RewardEntry.weight_percent: float(new_percent)}, synchronize_session=False))
            if not updated:
                logger.warning(f"Rebalance skipped reward entry {row.id}: weight changed concurrently.")
                continue
            changes.append((row.id, float(old_percent), float(new_percent)))
        self.db.expire_all()
        return changes
