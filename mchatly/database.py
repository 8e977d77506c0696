from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from mchatly.config import settings

Base = declarative_base()


def build_engine(database_url: str):
    if database_url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across threads.
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def create_tables() -> None:
    import mchatly.models  # noqa: F401  registers mappers on Base

    Base.metadata.create_all(bind=engine)
