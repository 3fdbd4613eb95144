"""
Node agent local database.

Each node agent keeps its own hostvol.db SQLite file under the state
directory. It is never shared between nodes.
"""

from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from hostvol.models import Base


def get_database_url(state_dir: str) -> str:
    state_path = Path(state_dir)
    state_path.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{state_path / 'hostvol.db'}"


def create_agent_engine(database_url: str):
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def init_db(engine) -> None:
    Base.metadata.create_all(bind=engine)


def get_session_factory(state_dir: str, database_url: Optional[str] = None):
    """
    Create the schema (if missing) and return a session factory.

    Args:
        state_dir: Agent state directory, used when database_url is not given
        database_url: Explicit SQLAlchemy URL (tests pass a temporary file)

    Returns:
        sessionmaker bound to the agent database
    """
    engine = create_agent_engine(database_url or get_database_url(state_dir))
    init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
