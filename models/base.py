import os
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

load_dotenv()  # loads DATABASE_URL from .env if present

DATABASE_URL = os.getenv("DATABASE_URL")

_engine = None

SessionLocal = sessionmaker(
    autoflush=False,
    autocommit=False,
    future=True,
    expire_on_commit=False,
)

Base = declarative_base()


def get_engine():
    """Create the shared engine on first use."""
    global _engine
    if _engine is None:
        if not DATABASE_URL:
            raise RuntimeError(
                "DATABASE_URL is not set. "
                "Set it in your environment or .env file (see README)."
            )
        _engine = create_engine(DATABASE_URL, echo=False, future=True)
    return _engine


def get_session():
    """Helper to get a new DB session."""
    return SessionLocal(bind=get_engine())


def enum_values(enum_cls):
    """Persist enum members by value ("no-show") rather than by name."""
    return [member.value for member in enum_cls]
