from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from lootwheel.config import DATABASE_URL


# --- SQLAlchemy Database Setup ---
engine = create_engine(DATABASE_URL, pool_recycle=3600, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    # Models register themselves on Base when imported
    import lootwheel.models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
