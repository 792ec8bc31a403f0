import logging
import threading
from typing import Dict, List, Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from accesslens.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(url: str = None) -> Engine:
    """Create an engine; SQLite gets thread-shared connections and a busy timeout."""
    url = url or settings.DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None) -> None:
    """Create every table that does not exist yet (additive only)."""
    import accesslens.models  # noqa: F401  registers the mappers

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    table_cache.forget(bind)


# ========== Dialect-aware statements ==========

def _insert_for(bind, table):
    name = bind.dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name in ("mysql", "mariadb"):
        from sqlalchemy.dialects.mysql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert(table)


def insert_ignore(session: Session, table, values: Dict, conflict_columns: List[str]):
    """INSERT that silently does nothing when the unique key already exists."""
    bind = session.get_bind()
    stmt = _insert_for(bind, table).values(**values)
    if bind.dialect.name in ("mysql", "mariadb"):
        return stmt.prefix_with("IGNORE")
    return stmt.on_conflict_do_nothing(index_elements=conflict_columns)


def upsert(session: Session, table, values: Dict, key_columns: List[str]):
    """INSERT that replaces every non-key column when the unique key exists."""
    bind = session.get_bind()
    stmt = _insert_for(bind, table).values(**values)
    update_columns = [c for c in values if c not in key_columns]
    if bind.dialect.name in ("mysql", "mariadb"):
        return stmt.on_duplicate_key_update({c: stmt.inserted[c] for c in update_columns})
    return stmt.on_conflict_do_update(
        index_elements=key_columns,
        set_={c: stmt.excluded[c] for c in update_columns},
    )


# ========== Table existence ==========

class TableExistenceCache:
    """Caches inspector lookups per engine; the schema only grows at runtime."""

    def __init__(self):
        self._known: Dict[tuple, bool] = {}
        self._lock = threading.Lock()

    def exists(self, bind: Engine, table_name: str) -> bool:
        key = (id(bind), table_name)
        with self._lock:
            if key in self._known:
                return self._known[key]
        found = inspect(bind).has_table(table_name)
        with self._lock:
            self._known[key] = found
        return found

    def forget(self, bind: Optional[Engine] = None) -> None:
        with self._lock:
            if bind is None:
                self._known.clear()
            else:
                for key in [k for k in self._known if k[0] == id(bind)]:
                    del self._known[key]


table_cache = TableExistenceCache()


def table_exists(session: Session, table_name: str) -> bool:
    return table_cache.exists(session.get_bind(), table_name)
