from sqlalchemy import Column, Integer, String, Float, ForeignKey, DateTime, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from lootwheel.database import Base


KIND_FUNGIBLE = "fungible"
KIND_NFT = "nft"

PAYOUT_NOT_REQUESTED = "not_requested"
PAYOUT_SENT = "sent"
PAYOUT_FAILED = "failed"


# --- Database Models ---
class RewardEntry(Base):
    __tablename__ = "reward_entries"
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    scope = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False, default=KIND_FUNGIBLE)
    display_name = Column(String, nullable=False)
    unit_price = Column(Float, nullable=False, default=0.0) # Amount awarded, SOL/token units
    weight_percent = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

class NFTInventoryItem(Base):
    __tablename__ = "nft_inventory"
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    mint_identity = Column(String, nullable=False, index=True)
    scope = Column(String, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_deposited = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())
    __table_args__ = (UniqueConstraint('scope', 'mint_identity', name='uq_nft_scope_mint'),)

class PendingPrize(Base):
    __tablename__ = "pending_prizes"
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    scope = Column(String, nullable=False, index=True)
    reward_description = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    amount = Column(Float, nullable=False, default=0.0)
    mint_identity = Column(String, nullable=True, index=True)
    reward_entry_id = Column(Integer, ForeignKey("reward_entries.id"), nullable=True)
    draw_value = Column(Float, nullable=True) # Uniform value the draw used, kept for audit
    is_claimed = Column(Boolean, default=False, nullable=False, index=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    destination_address = Column(String, nullable=True)
    payout_status = Column(String, default=PAYOUT_NOT_REQUESTED, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    reward_entry = relationship("RewardEntry")

class JackpotPoolState(Base):
    __tablename__ = "jackpot_pools"
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    scope = Column(String, nullable=True, index=True) # NULL is the main project
    min_amount = Column(Float, nullable=False, default=0.0)
    max_amount = Column(Float, nullable=False, default=0.0) # 0 means uncapped
    current_amount = Column(Float, nullable=False, default=0.0)
    contribution_rate = Column(Float, nullable=False, default=0.01)
    is_active = Column(Boolean, default=True, nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    is_settled = Column(Boolean, default=False, nullable=False)
    winner_user_id = Column(String, nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())
    contributions = relationship("JackpotContribution", back_populates="pool")
    wins = relationship("JackpotWinRecord", back_populates="pool")

class JackpotContribution(Base):
    __tablename__ = "jackpot_contributions"
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    pool_id = Column(Integer, ForeignKey("jackpot_pools.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False, default=0.0)
    contribution_type = Column(String, nullable=False, default="spin")
    transaction_hash = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    pool = relationship("JackpotPoolState", back_populates="contributions")

class JackpotWinRecord(Base):
    __tablename__ = "jackpot_wins"
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    pool_id = Column(Integer, ForeignKey("jackpot_pools.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False, default=0.0)
    win_type = Column(String, nullable=False, default="jackpot")
    is_claimed = Column(Boolean, default=False, nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    pool = relationship("JackpotPoolState", back_populates="wins")

class JackpotSetting(Base):
    __tablename__ = "jackpot_settings"
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    key = Column(String, unique=True, index=True, nullable=False)
    value = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())
