# crud/utils.py

from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert


def dialect_insert(db: Session, model):
    """INSERT construct with ON CONFLICT support for the session's database."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert(model)
    if name == "sqlite":
        return sqlite_insert(model)
    raise ValueError(f"Upserts are not supported on '{name}'")


def chunked(rows: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    size = max(1, int(size))
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


def upsert_batch(db: Session, model, rows: List[Dict[str, Any]], keys: Sequence[str],
                 preserve: Sequence[str] = (), batch_size: int = 200) -> int:
    """
    INSERT ... ON CONFLICT (keys) DO UPDATE for ``rows``, ``batch_size`` rows
    per statement. Every column present in the rows is overwritten except the
    conflict keys and ``preserve``. Returns the number of rows sent.
    Does not commit.
    """
    if not rows:
        return 0
    # rows in one statement must share the same column set
    columns = sorted({k for row in rows for k in row})
    normalized = [{c: row.get(c) for c in columns} for row in rows]
    # last write wins for duplicate keys inside one call
    deduped: Dict[tuple, Dict[str, Any]] = {}
    for row in normalized:
        deduped[tuple(row[k] for k in keys)] = row
    normalized = list(deduped.values())

    skip = set(keys) | set(preserve)
    sent = 0
    for chunk in chunked(normalized, batch_size):
        stmt = dialect_insert(db, model).values(list(chunk))
        update_cols = {c: getattr(stmt.excluded, c) for c in columns if c not in skip}
        if update_cols:
            stmt = stmt.on_conflict_do_update(index_elements=list(keys), set_=update_cols)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(keys))
        db.execute(stmt)
        sent += len(chunk)
    return sent


def insert_ignore(db: Session, model, rows: List[Dict[str, Any]], keys: Optional[Sequence[str]] = None,
                  batch_size: int = 200) -> None:
    """INSERT ... ON CONFLICT DO NOTHING. Does not commit."""
    if not rows:
        return
    for chunk in chunked(rows, batch_size):
        stmt = dialect_insert(db, model).values(list(chunk))
        stmt = stmt.on_conflict_do_nothing(index_elements=list(keys) if keys else None)
        db.execute(stmt)
