import os
import tempfile

# Configuration is read at import time, so the environment has to be set first
_TEST_DIR = tempfile.mkdtemp(prefix="lootwheel-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'app.db')}"
os.environ["AUTH_SECRET"] = "test-auth-secret"
os.environ["API_KEY_SECRET"] = "test-admin-key"
os.environ["NFT_POOL_PERCENT"] = "50"
os.environ["JACKPOT_BASE_CHANCE"] = "0.001"
os.environ["LOG_FILE"] = os.path.join(_TEST_DIR, "app.log")
os.environ.pop("PAYOUT_SERVICE_URL", None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from lootwheel.database import Base, init_db
from lootwheel.models import RewardEntry


class SequenceRandom:
    """Deterministic stand-in for random.Random that replays fixed values."""

    def __init__(self, values, index_values=None):
        self.values = list(values)
        self.index_values = list(index_values or [])

    def random(self):
        return self.values.pop(0)

    def randrange(self, stop):
        return self.index_values.pop(0) % stop


class FakePayoutExecutor:
    def __init__(self, succeed=True):
        self.succeed = succeed
        self.calls = []

    def execute(self, user_id, reward_description, destination_address=None, reference=None):
        self.calls.append((user_id, reward_description, destination_address, reference))
        if self.succeed:
            return {"status": "success"}
        return {"status": "error", "message": "transfer rejected"}


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'lootwheel.db'}", connect_args={"check_same_thread": False})
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def add_rewards(db):
    def _add(scope, weights, prices=None):
        prices = prices or [round(0.005 * (i + 1), 3) for i in range(len(weights))]
        rows = []
        for price, weight in zip(prices, weights):
            row = RewardEntry(scope=scope, display_name="SOL", unit_price=price, weight_percent=weight, is_active=True)
            db.add(row); rows.append(row)
        db.commit()
        return rows
    return _add


@pytest.fixture
def payout_executor():
    return FakePayoutExecutor()


@pytest.fixture
def clean_app_db():
    from lootwheel.database import engine
    init_db()
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
