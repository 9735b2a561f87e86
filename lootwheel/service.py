import logging
import random
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from lootwheel.catalog import RewardCatalog, NftReward
from lootwheel.errors import InventoryRaceError
from lootwheel.inventory import InventoryTracker
from lootwheel.jackpot import JackpotPool, JackpotWinSelector
from lootwheel.ledger import PrizeLedger
from lootwheel.models import KIND_NFT, PAYOUT_SENT, PAYOUT_FAILED
from lootwheel.selector import WeightedSelector
from lootwheel.weights import to_amount


logger = logging.getLogger(__name__)

MAX_DRAW_ATTEMPTS = 2 # First draw plus one retry after losing an NFT race


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


@dataclass
class SpinResult:
    reward: object
    pending_prize_id: int
    draw_value: float

    def to_dict(self):
        return {"reward": self.reward.to_dict(), "pending_prize_id": self.pending_prize_id, "draw_value": self.draw_value}


@dataclass
class ClaimOutcome:
    status: ClaimStatus
    prize_id: int
    payout_status: str | None

    def to_dict(self):
        return {"status": self.status.value, "prize_id": self.prize_id, "payout_status": self.payout_status}


class RewardService:
    """Entry points used by the HTTP layer. Each call runs on one injected session
    and owns its commits; the components underneath only flush."""

    def __init__(self, db, payout_executor=None, rng=None, base_chance: float | None = None):
        self.db = db
        self.rng = rng or random.SystemRandom()
        self.payout_executor = payout_executor
        self.inventory = InventoryTracker(db)
        self.catalog = RewardCatalog(db, self.inventory)
        self.selector = WeightedSelector()
        self.ledger = PrizeLedger(db)
        self.jackpot_pools = JackpotPool(db)
        self.jackpot = JackpotWinSelector(db, self.jackpot_pools, rng=self.rng, base_chance=base_chance)

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _pay(self, user_id, description, destination_address, reference):
        if self.payout_executor is None:
            logger.error(f"No payout executor configured, {reference} for user {user_id} left unpaid.")
            return False
        try:
            result = self.payout_executor.execute(user_id, description, destination_address, reference)
        except Exception as e:
            logger.error(f"Payout executor raised for {reference} (user {user_id}): {e}", exc_info=True)
            return False
        if result and result.get("status") == "success":
            logger.info(f"Payout for {reference} sent to user {user_id}.")
            return True
        logger.error(f"Payout for {reference} failed for user {user_id}: {result}")
        return False

    # --- Spins and prizes ---
    def spin(self, user_id: str, scope: str, stake_amount) -> SpinResult:
        stake = to_amount(stake_amount, "stake_amount")
        excluded_mints = []
        for attempt in range(MAX_DRAW_ATTEMPTS):
            try:
                snapshot = self.catalog.snapshot(scope, exclude_mints=excluded_mints)
                draw = self.selector.draw(snapshot, self.rng.random())
                if isinstance(draw.entry, NftReward):
                    self.inventory.mark_won(scope, draw.entry.mint_identity)
                prize = self.ledger.record_pending(user_id, scope, draw)
                self.db.commit()
                break
            except InventoryRaceError as race:
                self.db.rollback()
                logger.warning(f"Spin by {user_id} in '{scope}' lost NFT {race.mint_identity} to a concurrent draw (attempt {attempt + 1}).")
                if attempt + 1 >= MAX_DRAW_ATTEMPTS:
                    raise
                excluded_mints.append(race.mint_identity)
            except Exception:
                self.db.rollback()
                raise
        result = SpinResult(reward=draw.entry, pending_prize_id=prize.id, draw_value=draw.random_value)

        # Jackpot accrual never undoes a recorded spin
        try:
            self.jackpot_pools.contribute_from_spin(user_id, stake, scope)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Jackpot accrual failed after spin by {user_id} in '{scope}': {e}", exc_info=True)
        return result

    def claim_prize(self, user_id: str, prize_id: int, destination_address: str | None = None) -> ClaimOutcome:
        with self._transaction():
            result = self.ledger.claim(prize_id, user_id=user_id, destination_address=destination_address)
            prize = result.prize
            if not result.already_claimed and prize.kind == KIND_NFT and prize.mint_identity:
                self.inventory.mark_withdrawn(prize.scope, prize.mint_identity)
        if result.already_claimed:
            logger.info(f"Prize {prize_id} already claimed, no payout triggered.")
            return ClaimOutcome(status=ClaimStatus.ALREADY_CLAIMED, prize_id=prize_id, payout_status=prize.payout_status)
        paid = self._pay(user_id, prize.reward_description, destination_address, f"prize-{prize_id}")
        with self._transaction():
            self.ledger.mark_payout(prize_id, PAYOUT_SENT if paid else PAYOUT_FAILED)
        return ClaimOutcome(status=ClaimStatus.CLAIMED, prize_id=prize_id,
                            payout_status=PAYOUT_SENT if paid else PAYOUT_FAILED)

    def get_catalog(self, scope: str):
        return self.catalog.weight_status(scope)

    def get_pending_prizes(self, user_id: str, scope: str) -> list:
        return self.ledger.list_pending(user_id, scope)

    def return_to_inventory(self, prize_id: int):
        with self._transaction():
            scope, mint_identity = self.ledger.release(prize_id)
            share = self.inventory.mark_available(scope, mint_identity)
        return scope, mint_identity, share

    # --- Jackpot ---
    def evaluate_jackpot(self, user_id: str, stake_amount, scope=None):
        with self._transaction():
            return self.jackpot.evaluate_spin(user_id, stake_amount, scope=scope)

    def settle_jackpot(self, pool_id: int):
        with self._transaction():
            return self.jackpot.settle_pool(pool_id)

    def claim_jackpot_win(self, user_id: str, win_id: int, destination_address: str | None = None) -> ClaimOutcome:
        with self._transaction():
            already_claimed, win = self.jackpot.claim_win(win_id, user_id)
            amount = win.amount
        if already_claimed:
            return ClaimOutcome(status=ClaimStatus.ALREADY_CLAIMED, prize_id=win_id, payout_status=None)
        paid = self._pay(user_id, f"{amount:g} SOL jackpot", destination_address, f"jackpot-win-{win_id}")
        return ClaimOutcome(status=ClaimStatus.CLAIMED, prize_id=win_id,
                            payout_status=PAYOUT_SENT if paid else PAYOUT_FAILED)

    # --- Admin ---
    def add_reward(self, scope, display_name, unit_price, weight_percent, rebalance=True):
        with self._transaction():
            return self.catalog.add_entry(scope, display_name, unit_price, weight_percent, rebalance=rebalance)

    def set_reward_weight(self, entry_id, weight_percent):
        with self._transaction():
            return self.catalog.set_weight(entry_id, weight_percent)

    def deactivate_reward(self, entry_id):
        with self._transaction():
            self.catalog.deactivate_entry(entry_id)

    def deposit_nft(self, scope, mint_identity, display_name=None):
        with self._transaction():
            return self.inventory.deposit(scope, mint_identity, display_name)

    def create_jackpot_pool(self, **pool_fields):
        with self._transaction():
            return self.jackpot_pools.create_pool(**pool_fields)
