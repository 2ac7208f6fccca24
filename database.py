from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from config import settings  # noqa: E402


def build_engine(url: str, **kwargs):
    """
    Creates an engine for the given URL. Pool settings only apply to
    server databases; SQLite (tests, local runs) uses the driver defaults.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        return create_engine(url, **kwargs)
    return create_engine(
        url,
        pool_size=10,  # connections kept open in the pool
        max_overflow=20,
        pool_recycle=3600,  # recycle after 1 hour to avoid server-side timeouts
        pool_pre_ping=True,
        **kwargs,
    )


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


engine = build_engine(settings.database_url)

# Create a SessionLocal class for creating new Session objects
SessionLocal = make_session_factory(engine)

# Create a Base class for declarative models
Base = declarative_base()

