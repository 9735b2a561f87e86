import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime as dt, timezone
from decimal import Decimal

from sqlalchemy import and_, case, func, or_
from sqlalchemy.exc import SQLAlchemyError

from lootwheel.config import JACKPOT_BASE_CHANCE, JACKPOT_WIN_CHANCE_KEY
from lootwheel.errors import NotFoundError, ValidationError
from lootwheel.models import JackpotPoolState, JackpotContribution, JackpotWinRecord, JackpotSetting
from lootwheel.selector import cumulative_pick
from lootwheel.weights import to_amount


logger = logging.getLogger(__name__)

ANY_SCOPE = object()

WIN_TYPE_JACKPOT = "jackpot"
WIN_TYPE_FINAL = "jackpot_final"


@dataclass
class JackpotOutcome:
    won: bool
    pool_id: int | None = None
    win_amount: float | None = None
    win_id: int | None = None
    chance: float | None = None

    def to_dict(self):
        if not self.won:
            return {"won": False}
        return {"won": True, "pool_id": self.pool_id, "win_amount": self.win_amount, "win_id": self.win_id}


@dataclass
class Participant:
    user_id: str
    ticket_count: int
    total_contributed: float

    def to_dict(self):
        return {"user_id": self.user_id, "ticket_count": self.ticket_count, "total_contributed": self.total_contributed}


@dataclass
class Settlement:
    pool_id: int
    already_settled: bool
    winner_user_id: str | None = None
    win_id: int | None = None
    amount: float | None = None
    settled_at: dt | None = None

    def to_dict(self):
        return {"pool_id": self.pool_id, "already_settled": self.already_settled,
                "no_winner": self.winner_user_id is None, "winner_user_id": self.winner_user_id,
                "win_id": self.win_id, "amount": self.amount,
                "settled_at": self.settled_at.isoformat() if self.settled_at else None}


def pool_to_dict(pool: JackpotPoolState) -> dict:
    return {
        "id": pool.id, "name": pool.name, "description": pool.description, "scope": pool.scope,
        "min_amount": pool.min_amount, "max_amount": pool.max_amount, "current_amount": pool.current_amount,
        "contribution_rate": pool.contribution_rate, "is_active": pool.is_active,
        "end_time": pool.end_time.isoformat() if pool.end_time else None,
        "is_settled": pool.is_settled, "winner_user_id": pool.winner_user_id,
    }


def win_to_dict(win: JackpotWinRecord) -> dict:
    return {
        "id": win.id, "pool_id": win.pool_id, "pool_name": win.pool.name if win.pool else None,
        "user_id": win.user_id, "amount": win.amount, "win_type": win.win_type, "is_claimed": win.is_claimed,
        "created_at": win.created_at.isoformat() if win.created_at else None,
    }


def _as_utc(value: dt) -> dt:
    # SQLite hands back naive datetimes
    return value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)


class JackpotPool:
    """Shared SOL pools fed by a fraction of every spin's stake."""

    def __init__(self, db):
        self.db = db

    def get_pool(self, pool_id: int) -> JackpotPoolState:
        pool = self.db.get(JackpotPoolState, pool_id)
        if not pool:
            raise NotFoundError(f"Jackpot pool {pool_id} not found.")
        return pool

    def create_pool(self, name, contribution_rate, min_amount=0.0, max_amount=0.0, scope=None,
                    description=None, end_time=None) -> JackpotPoolState:
        if not name:
            raise ValidationError("Pool name is required.")
        rate = to_amount(contribution_rate, "contribution_rate")
        if rate > 1:
            raise ValidationError(f"contribution_rate must be between 0 and 1, got {rate}.")
        min_amt = to_amount(min_amount, "min_amount")
        max_amt = to_amount(max_amount, "max_amount")
        if max_amt and max_amt < min_amt:
            raise ValidationError("max_amount cannot be below min_amount.")
        pool = JackpotPoolState(name=name, description=description, scope=scope, min_amount=min_amt,
                                max_amount=max_amt, current_amount=min_amt, contribution_rate=rate,
                                is_active=True, end_time=_as_utc(end_time) if end_time else None)
        self.db.add(pool); self.db.flush()
        logger.info(f"Created jackpot pool {pool.id} '{name}' (rate {rate}, scope {scope!r}).")
        return pool

    def list_active_pools(self, scope=ANY_SCOPE, now: dt | None = None) -> list:
        """Pools still open for contributions and wins: active, unsettled and not past their end time."""
        now = now or dt.now(timezone.utc)
        query = (self.db.query(JackpotPoolState)
                 .filter(JackpotPoolState.is_active == True,  # noqa: E712
                         JackpotPoolState.is_settled == False,  # noqa: E712
                         or_(JackpotPoolState.end_time.is_(None), JackpotPoolState.end_time > now)))
        if scope is None:
            query = query.filter(JackpotPoolState.scope.is_(None))
        elif scope is not ANY_SCOPE:
            query = query.filter(JackpotPoolState.scope == scope)
        return query.order_by(JackpotPoolState.current_amount.desc(), JackpotPoolState.id).all()

    def contribute(self, pool_id: int, amount, user_id: str | None = None, contribution_type: str = "spin",
                   transaction_hash: str | None = None, now: dt | None = None) -> float:
        stake = to_amount(amount)
        pool = self.get_pool(pool_id)
        if not pool.is_active or pool.is_settled:
            raise NotFoundError(f"Jackpot pool {pool_id} is not active.")
        if pool.end_time and (now or dt.now(timezone.utc)) >= _as_utc(pool.end_time):
            raise NotFoundError(f"Jackpot pool {pool_id} closed at {pool.end_time.isoformat()}.")
        increment = float(Decimal(str(stake)) * Decimal(str(pool.contribution_rate)))
        if increment <= 0:
            return 0.0
        current = JackpotPoolState.current_amount
        cap = JackpotPoolState.max_amount
        raised = current + increment
        # Capped at max_amount, never lowered
        new_amount = case(
            (and_(cap > 0, current >= cap), current),
            (and_(cap > 0, raised > cap), cap),
            else_=raised,
        )
        (self.db.query(JackpotPoolState)
         .filter(JackpotPoolState.id == pool_id)
         .update({JackpotPoolState.current_amount: new_amount}, synchronize_session=False))
        if user_id is not None:
            self.db.add(JackpotContribution(pool_id=pool_id, user_id=user_id, amount=increment,
                                            contribution_type=contribution_type, transaction_hash=transaction_hash))
        self.db.flush()
        self.db.refresh(pool)
        logger.debug(f"Pool {pool_id} +{increment} from {user_id or 'anonymous'} -> {pool.current_amount}.")
        return increment

    def contribute_from_spin(self, user_id: str, spin_amount, scope=None, transaction_hash: str | None = None) -> int:
        contributions = 0
        for pool in self.list_active_pools(scope):
            if self.contribute(pool.id, spin_amount, user_id=user_id, transaction_hash=transaction_hash) > 0:
                contributions += 1
        return contributions

    def reset_pool(self, pool_id: int, expected_amount: float | None = None) -> bool:
        """Zero a pool. Only called while recording a win, in the same transaction."""
        query = self.db.query(JackpotPoolState).filter(JackpotPoolState.id == pool_id)
        if expected_amount is not None:
            query = query.filter(JackpotPoolState.current_amount == expected_amount)
        return query.update({JackpotPoolState.current_amount: 0.0}, synchronize_session=False) > 0

    # Aggregates: fast SQL path, manual recomputation from raw rows when it errors
    def total_contributions(self, pool_id: int) -> float:
        try:
            with self.db.begin_nested():
                return self._total_contributions_aggregate(pool_id)
        except SQLAlchemyError as e:
            logger.warning(f"Aggregate total for pool {pool_id} failed, recomputing from rows: {e}")
            return self._total_contributions_manual(pool_id)

    def _total_contributions_aggregate(self, pool_id):
        total = (self.db.query(func.coalesce(func.sum(JackpotContribution.amount), 0.0))
                 .filter(JackpotContribution.pool_id == pool_id)
                 .scalar())
        return float(total or 0.0)

    def _total_contributions_manual(self, pool_id):
        rows = self.db.query(JackpotContribution.amount).filter(JackpotContribution.pool_id == pool_id).all()
        return float(sum((Decimal(str(row.amount)) for row in rows), Decimal('0')))

    def participants(self, pool_id: int) -> list:
        try:
            with self.db.begin_nested():
                return self._participants_aggregate(pool_id)
        except SQLAlchemyError as e:
            logger.warning(f"Aggregate participants for pool {pool_id} failed, grouping rows manually: {e}")
            return self._participants_manual(pool_id)

    def _participants_aggregate(self, pool_id):
        rows = (self.db.query(JackpotContribution.user_id,
                              func.count(JackpotContribution.id).label("ticket_count"),
                              func.sum(JackpotContribution.amount).label("total_contributed"))
                .filter(JackpotContribution.pool_id == pool_id)
                .group_by(JackpotContribution.user_id)
                .order_by(JackpotContribution.user_id)
                .all())
        return [Participant(user_id=row.user_id, ticket_count=int(row.ticket_count),
                            total_contributed=float(row.total_contributed or 0.0)) for row in rows]

    def _participants_manual(self, pool_id):
        grouped = {}
        rows = (self.db.query(JackpotContribution.user_id, JackpotContribution.amount)
                .filter(JackpotContribution.pool_id == pool_id)
                .all())
        for row in rows:
            tickets, total = grouped.get(row.user_id, (0, Decimal('0')))
            grouped[row.user_id] = (tickets + 1, total + Decimal(str(row.amount)))
        return [Participant(user_id=user_id, ticket_count=tickets, total_contributed=float(total))
                for user_id, (tickets, total) in sorted(grouped.items())]


class JackpotWinSelector:
    """Rolls for a jackpot on each spin and picks winners among pool contributors."""

    def __init__(self, db, pools: JackpotPool | None = None, rng=None, base_chance: float | None = None):
        self.db = db
        self.pools = pools or JackpotPool(db)
        self.rng = rng or random.SystemRandom()
        self._base_chance = base_chance

    def base_chance(self) -> float:
        if self._base_chance is not None:
            return self._base_chance
        setting = self.db.query(JackpotSetting).filter(JackpotSetting.key == JACKPOT_WIN_CHANCE_KEY).first()
        if setting and setting.value:
            try:
                return float(setting.value)
            except ValueError:
                logger.warning(f"Invalid {JACKPOT_WIN_CHANCE_KEY} setting {setting.value!r}, using default {JACKPOT_BASE_CHANCE}.")
        return JACKPOT_BASE_CHANCE

    @staticmethod
    def chance_for(spin_amount: float, base_chance: float) -> float:
        # Higher stakes raise the odds, sub-linearly
        return base_chance * (1 + math.log10(spin_amount + 1))

    def evaluate_spin(self, user_id: str, spin_amount, scope=None, random_value: float | None = None,
                      pool_value: float | None = None) -> JackpotOutcome:
        stake = to_amount(spin_amount, "spin_amount")
        chance = self.chance_for(stake, self.base_chance())
        roll = self.rng.random() if random_value is None else random_value
        if roll >= chance:
            return JackpotOutcome(won=False, chance=chance)

        for attempt in range(2):
            pools = self.pools.list_active_pools(scope)
            if not pools:
                logger.info(f"User {user_id} rolled a jackpot win ({roll} < {chance}) but no active pools exist for scope {scope!r}.")
                return JackpotOutcome(won=False, chance=chance)
            u = pool_value if (pool_value is not None and attempt == 0) else self.rng.random()
            pool = cumulative_pick(pools, lambda p: p.current_amount, u)
            if pool is None:
                logger.info(f"User {user_id} rolled a jackpot win but every pool for scope {scope!r} is empty.")
                return JackpotOutcome(won=False, chance=chance)
            win_amount = pool.current_amount
            if not self.pools.reset_pool(pool.id, expected_amount=win_amount):
                logger.warning(f"Pool {pool.id} changed before reset (attempt {attempt + 1}), re-reading pools.")
                self.db.expire_all()
                continue
            win = JackpotWinRecord(pool_id=pool.id, user_id=user_id, amount=win_amount,
                                   win_type=WIN_TYPE_JACKPOT, is_claimed=False)
            self.db.add(win); self.db.flush()
            self.db.expire(pool)
            logger.info(f"JACKPOT: user {user_id} won {win_amount} SOL from pool {pool.id} ('{pool.name}'), win {win.id}.")
            return JackpotOutcome(won=True, pool_id=pool.id, win_amount=win_amount, win_id=win.id, chance=chance)
        logger.warning(f"User {user_id} lost the jackpot reset race twice, reporting no win.")
        return JackpotOutcome(won=False, chance=chance)

    def pick_winner(self, pool_id: int) -> JackpotContribution | None:
        try:
            with self.db.begin_nested():
                return self._pick_weighted(pool_id)
        except SQLAlchemyError as e:
            logger.warning(f"Weighted winner selection for pool {pool_id} failed, falling back to uniform pick: {e}")
            return self._pick_uniform(pool_id)

    def _pick_weighted(self, pool_id):
        total = self.pools._total_contributions_aggregate(pool_id)
        if total <= 0:
            return self._pick_uniform(pool_id)
        threshold = self.rng.random() * total
        cumulative = func.sum(JackpotContribution.amount).over(order_by=JackpotContribution.id).label("cumulative")
        running = (self.db.query(JackpotContribution.id.label("id"), cumulative)
                   .filter(JackpotContribution.pool_id == pool_id)
                   .subquery())
        row = (self.db.query(running.c.id)
               .filter(running.c.cumulative > threshold)
               .order_by(running.c.id)
               .first())
        if row is None:
            row = self.db.query(func.max(JackpotContribution.id).label("id")).filter(JackpotContribution.pool_id == pool_id).first()
        return self.db.get(JackpotContribution, row.id)

    def _pick_uniform(self, pool_id):
        rows = (self.db.query(JackpotContribution)
                .filter(JackpotContribution.pool_id == pool_id)
                .order_by(JackpotContribution.id)
                .all())
        if not rows:
            logger.warning(f"No contributions found for pool {pool_id}.")
            return None
        return rows[self.rng.randrange(len(rows))]

    def settle_pool(self, pool_id: int, now: dt | None = None) -> Settlement:
        """Pick the single final winner of a timed pool. Once settled, the winner never changes."""
        pool = self.pools.get_pool(pool_id)
        if pool.is_settled:
            return self._saved_settlement(pool)
        if pool.end_time is None:
            raise ValidationError(f"Jackpot pool {pool_id} has no end time and cannot be settled.")
        now = now or dt.now(timezone.utc)
        if now < _as_utc(pool.end_time):
            raise ValidationError(f"Jackpot pool {pool_id} is still running until {pool.end_time.isoformat()}.")

        winner = self.pick_winner(pool_id)
        winner_user_id = winner.user_id if winner else None
        amount = pool.current_amount
        updated = (self.db.query(JackpotPoolState)
                   .filter(JackpotPoolState.id == pool_id, JackpotPoolState.is_settled == False)  # noqa: E712
                   .update({JackpotPoolState.is_settled: True, JackpotPoolState.winner_user_id: winner_user_id,
                            JackpotPoolState.settled_at: now, JackpotPoolState.current_amount: 0.0,
                            JackpotPoolState.is_active: False},
                           synchronize_session=False))
        if not updated:
            logger.info(f"Pool {pool_id} was settled concurrently, returning the saved winner.")
            self.db.refresh(pool)
            return self._saved_settlement(pool)
        win_id = None
        if winner_user_id:
            win = JackpotWinRecord(pool_id=pool_id, user_id=winner_user_id, amount=amount,
                                   win_type=WIN_TYPE_FINAL, is_claimed=False)
            self.db.add(win); self.db.flush()
            win_id = win.id
            logger.info(f"Pool {pool_id} settled: user {winner_user_id} wins {amount} SOL (win {win_id}).")
        else:
            logger.info(f"Pool {pool_id} settled with no participants.")
        self.db.refresh(pool)
        return Settlement(pool_id=pool_id, already_settled=False, winner_user_id=winner_user_id,
                          win_id=win_id, amount=amount, settled_at=now)

    def _saved_settlement(self, pool):
        win = (self.db.query(JackpotWinRecord)
               .filter(JackpotWinRecord.pool_id == pool.id, JackpotWinRecord.win_type == WIN_TYPE_FINAL)
               .first())
        return Settlement(pool_id=pool.id, already_settled=True, winner_user_id=pool.winner_user_id,
                          win_id=win.id if win else None, amount=win.amount if win else None,
                          settled_at=pool.settled_at)

    def list_user_wins(self, user_id: str) -> list:
        return (self.db.query(JackpotWinRecord)
                .filter(JackpotWinRecord.user_id == user_id)
                .order_by(JackpotWinRecord.created_at.desc(), JackpotWinRecord.id.desc())
                .all())

    def claim_win(self, win_id: int, user_id: str):
        """Flip a win to claimed. Returns (already_claimed, win)."""
        win = (self.db.query(JackpotWinRecord)
               .filter(JackpotWinRecord.id == win_id, JackpotWinRecord.user_id == user_id)
               .first())
        if not win:
            raise NotFoundError(f"Jackpot win {win_id} not found.")
        if win.is_claimed:
            return True, win
        updated = (self.db.query(JackpotWinRecord)
                   .filter(JackpotWinRecord.id == win_id, JackpotWinRecord.is_claimed == False)  # noqa: E712
                   .update({JackpotWinRecord.is_claimed: True, JackpotWinRecord.claimed_at: dt.now(timezone.utc)},
                           synchronize_session=False))
        self.db.refresh(win)
        return not updated, win
