import logging
from dataclasses import dataclass
from decimal import Decimal

from lootwheel.errors import EmptyCatalogError, ValidationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Draw:
    entry: object
    random_value: float
    total_weight: float


def cumulative_pick(items, weight_of, random_value):
    """Walk ``items`` in order and return the first whose cumulative weight exceeds
    ``random_value * total``. Returns None when the total weight is zero."""
    total = sum((Decimal(str(weight_of(item))) for item in items), Decimal('0'))
    if total <= 0:
        return None
    threshold = Decimal(str(random_value)) * total
    cumulative = Decimal('0')
    last_positive = None
    for item in items:
        weight = Decimal(str(weight_of(item)))
        if weight <= 0:
            continue
        last_positive = item
        cumulative += weight
        if cumulative > threshold:
            return item
    return last_positive


class WeightedSelector:
    """Draws one reward from a catalog snapshot in proportion to its weights.

    The walk order is fixed (fungible tiers by id, then NFTs by id), so a draw is
    fully determined by the snapshot and the uniform value in [0, 1).
    """

    def draw(self, catalog_snapshot, random_value: float) -> Draw:
        if not 0 <= random_value < 1:
            raise ValidationError(f"random_value must be in [0, 1), got {random_value}.")
        entries = sorted(catalog_snapshot, key=lambda e: e.sort_key)
        if not entries:
            raise EmptyCatalogError("No active rewards to draw from.")
        total = sum((Decimal(str(e.weight_percent)) for e in entries), Decimal('0'))
        chosen = cumulative_pick(entries, lambda e: e.weight_percent, random_value)
        if chosen is None:
            raise EmptyCatalogError("Every active reward has zero weight.")
        logger.debug(f"Drew {chosen.kind} reward {chosen.sort_key} with r={random_value} over total {total}.")
        return Draw(entry=chosen, random_value=random_value, total_weight=float(total))
