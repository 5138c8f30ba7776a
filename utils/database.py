"""Database helpers for the EquipTrack local cache.

Utilities provided:
- initialize the SQLite engine
- create the cache table

The default local SQLite file is `database/cache.db` (configurable via the
`SQLITE_FILE` environment variable). The module ensures the parent directory
exists before creating the SQLAlchemy engine so the cache can be created on
first use.

Copyright (c) Bryn Gwalad 2025
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

# Load environment variables from .env if present
load_dotenv()

# Import the cache table so it is registered on SQLModel metadata.
from sync.cache import CacheEntry  # noqa: F401

# Default SQLite file location. Honor the SQLITE_FILE env var when set.
sqlite_file_name = os.getenv("SQLITE_FILE", "database/cache.db")
sqlite_url = f"sqlite:///{sqlite_file_name}"

# Ensure parent directory exists before creating the engine
db_path = Path(sqlite_file_name)
try:
    db_path.parent.mkdir(parents=True, exist_ok=True)
except OSError:
    # If directory creation fails, let create_engine raise a clearer error
    # later rather than crashing during import.
    pass

# Create the engine (no echo by default)
engine = create_engine(sqlite_url, echo=False)

# Ensure tables exist on import. Startup handlers also call `init_db()`, but
# tests or scripts that build a cache store directly may expect the table to
# already exist.
try:
    SQLModel.metadata.create_all(engine)
except Exception:
    # Allow the runtime startup to attempt creation again.
    pass


def init_db(target: Optional[Engine] = None) -> None:
    """Create database tables from SQLModel metadata."""
    SQLModel.metadata.create_all(target or engine)
