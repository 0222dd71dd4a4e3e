"""SQLite storage for memos and their extracted payloads.

Tags live in a per-owner dictionary (`tags`) joined to memos through
`memo_tags`; property flags are denormalized onto the memo row.
"""

import logging
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from keer_index.parser import ExtractionError, MemoPayload, MemoPayloadProperty, extract_payload
from keer_index.prefilter import MemoSQLPrefilter, MemoState, Unsatisfiable, Visibility, validate

logger = logging.getLogger(__name__)

DB_PATH = Path.home() / ".local/share/keer-index/keer.db"


@dataclass
class IndexedMemo:
    """A memo as stored in the database."""

    id: int
    creator_id: int
    content: str
    visibility: Visibility
    state: MemoState
    pinned: bool
    payload: MemoPayload


@dataclass
class RebuildStats:
    total: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: list[str] = field(default_factory=list)


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    """Get a database connection with optimal settings."""
    path = db_path or DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")  # better concurrent read performance
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


SCHEMA = """
CREATE TABLE IF NOT EXISTS memos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    creator_id INTEGER NOT NULL,
    content TEXT NOT NULL,
    visibility TEXT NOT NULL DEFAULT 'PRIVATE',
    state TEXT NOT NULL DEFAULT 'NORMAL',
    pinned INTEGER NOT NULL DEFAULT 0,
    has_link INTEGER NOT NULL DEFAULT 0,
    has_code INTEGER NOT NULL DEFAULT 0,
    has_task_list INTEGER NOT NULL DEFAULT 0,
    has_incomplete_tasks INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_memos_creator ON memos(creator_id);

-- Per-owner tag dictionary; BINARY collation keeps "work" and "Work" apart
CREATE TABLE IF NOT EXISTS tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    creator_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    UNIQUE (creator_id, name)
);

CREATE TABLE IF NOT EXISTS memo_tags (
    memo_id INTEGER NOT NULL REFERENCES memos(id) ON DELETE CASCADE,
    tag_id INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,    -- order of first occurrence in the memo
    PRIMARY KEY (memo_id, tag_id)
);

CREATE INDEX IF NOT EXISTS idx_memo_tags_tag ON memo_tags(tag_id);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Initialize database schema."""
    conn.executescript(SCHEMA)
    conn.commit()


def _write_payload(conn: sqlite3.Connection, memo_id: int, creator_id: int, payload: MemoPayload) -> None:
    prop = payload.property
    conn.execute(
        """
        UPDATE memos SET has_link = ?, has_code = ?, has_task_list = ?, has_incomplete_tasks = ?
        WHERE id = ?
        """,
        (prop.has_link, prop.has_code, prop.has_task_list, prop.has_incomplete_tasks, memo_id),
    )

    # Replace tag links (delete old, insert new)
    conn.execute("DELETE FROM memo_tags WHERE memo_id = ?", (memo_id,))
    for position, name in enumerate(payload.tags):
        conn.execute("INSERT OR IGNORE INTO tags (creator_id, name) VALUES (?, ?)", (creator_id, name))
        tag_id = conn.execute(
            "SELECT id FROM tags WHERE creator_id = ? AND name = ?", (creator_id, name)
        ).fetchone()["id"]
        conn.execute(
            "INSERT INTO memo_tags (memo_id, tag_id, position) VALUES (?, ?, ?)",
            (memo_id, tag_id, position),
        )


def save_payload(conn: sqlite3.Connection, memo_id: int, creator_id: int, payload: MemoPayload) -> None:
    """Overwrite a memo's stored tags and property flags."""
    _write_payload(conn, memo_id, creator_id, payload)
    conn.commit()


def create_memo(
    conn: sqlite3.Connection,
    creator_id: int,
    content: str,
    visibility: Visibility = Visibility.PRIVATE,
    state: MemoState = MemoState.NORMAL,
    pinned: bool = False,
) -> int:
    """Insert a memo together with its extracted payload. Returns the memo id.

    Raises ExtractionError without writing anything if the content can't be parsed.
    """
    payload = extract_payload(content)
    cursor = conn.execute(
        "INSERT INTO memos (creator_id, content, visibility, state, pinned) VALUES (?, ?, ?, ?, ?)",
        (creator_id, content, Visibility(visibility).value, MemoState(state).value, pinned),
    )
    memo_id = cursor.lastrowid
    _write_payload(conn, memo_id, creator_id, payload)
    conn.commit()
    return memo_id


def update_memo_content(conn: sqlite3.Connection, memo_id: int, content: str) -> None:
    """Replace a memo's content and re-extract its payload."""
    row = conn.execute("SELECT creator_id FROM memos WHERE id = ?", (memo_id,)).fetchone()
    if not row:
        raise KeyError(f"memo {memo_id} not found")
    payload = extract_payload(content)
    conn.execute("UPDATE memos SET content = ? WHERE id = ?", (content, memo_id))
    _write_payload(conn, memo_id, row["creator_id"], payload)
    conn.commit()


def delete_memo(conn: sqlite3.Connection, memo_id: int) -> None:
    """Delete a memo (tag links cascade automatically)."""
    conn.execute("DELETE FROM memos WHERE id = ?", (memo_id,))
    conn.commit()


def _row_to_memo(row: sqlite3.Row, tags: tuple[str, ...]) -> IndexedMemo:
    return IndexedMemo(
        id=row["id"],
        creator_id=row["creator_id"],
        content=row["content"],
        visibility=Visibility(row["visibility"]),
        state=MemoState(row["state"]),
        pinned=bool(row["pinned"]),
        payload=MemoPayload(
            tags=tags,
            property=MemoPayloadProperty(
                has_link=bool(row["has_link"]),
                has_code=bool(row["has_code"]),
                has_task_list=bool(row["has_task_list"]),
                has_incomplete_tasks=bool(row["has_incomplete_tasks"]),
            ),
        ),
    )


def _load_memos(
    conn: sqlite3.Connection,
    where: str = "",
    params: Sequence = (),
    order: str = "memos.id DESC",
) -> list[IndexedMemo]:
    """Load memos and their tags in two queries, whatever the row count.

    `where` and `order` are fixed SQL fragments; values always go through `params`.
    """
    clause = f"WHERE {where}" if where else ""
    rows = conn.execute(f"SELECT memos.* FROM memos {clause} ORDER BY {order}", params).fetchall()
    tag_rows = conn.execute(
        f"""
        SELECT memo_tags.memo_id, tags.name FROM memo_tags
        JOIN tags ON tags.id = memo_tags.tag_id
        JOIN memos ON memos.id = memo_tags.memo_id
        {clause}
        ORDER BY memo_tags.memo_id, memo_tags.position
        """,
        params,
    ).fetchall()

    tags: dict[int, list[str]] = {}
    for row in tag_rows:
        tags.setdefault(row["memo_id"], []).append(row["name"])
    return [_row_to_memo(row, tuple(tags.get(row["id"], ()))) for row in rows]


def get_memo(conn: sqlite3.Connection, memo_id: int) -> IndexedMemo | None:
    """Retrieve a single memo by id."""
    found = _load_memos(conn, "memos.id = ?", (memo_id,))
    return found[0] if found else None


def list_tags(conn: sqlite3.Connection, creator_id: int) -> list[str]:
    """Tags in an owner's dictionary that are still referenced by a memo."""
    rows = conn.execute(
        """
        SELECT DISTINCT tags.name FROM tags
        JOIN memo_tags ON memo_tags.tag_id = tags.id
        WHERE tags.creator_id = ?
        ORDER BY tags.name
        """,
        (creator_id,),
    ).fetchall()
    return [row["name"] for row in rows]


def list_memos(
    conn: sqlite3.Connection,
    prefilter: MemoSQLPrefilter,
    limit: int = 0,
    offset: int = 0,
) -> list[IndexedMemo]:
    """Memos accepted by the prefilter, newest first.

    An unsatisfiable prefilter returns [] without querying the database.
    Owner and state constraints narrow the SQL query; everything else is
    checked on the loaded rows.

    Args:
        limit: Maximum results to return (0 = no limit)
        offset: Number of matching memos to skip
    """
    check = validate(prefilter)
    if isinstance(check, Unsatisfiable):
        logger.debug("skipping memo query: %s", check.reason)
        return []

    clauses = []
    params: list = []
    if prefilter.creator_ids:
        clauses.append(f"memos.creator_id IN ({', '.join('?' * len(prefilter.creator_ids))})")
        params.extend(sorted(prefilter.creator_ids))
    if prefilter.state_in:
        clauses.append(f"memos.state IN ({', '.join('?' * len(prefilter.state_in))})")
        params.extend(sorted(state.value for state in prefilter.state_in))

    candidates = _load_memos(conn, " AND ".join(clauses), params)
    matched = [memo for memo in candidates if check.matches(memo)]
    if limit > 0:
        return matched[offset : offset + limit]
    return matched[offset:]


def rebuild_payloads(
    conn: sqlite3.Connection,
    on_progress: Callable[[int], None] | None = None,
) -> RebuildStats:
    """Re-extract every memo and overwrite its stored tags and flags.

    A memo that fails extraction is recorded in `errors` and left as it was.
    """
    stats = RebuildStats()
    for memo in _load_memos(conn, order="memos.id"):
        stats.total += 1
        try:
            payload = extract_payload(memo.content)
        except ExtractionError as e:
            logger.warning("memo %d: %s", memo.id, e)
            stats.errors.append(f"memo {memo.id}: {e}")
        else:
            if payload == memo.payload:
                stats.unchanged += 1
            else:
                _write_payload(conn, memo.id, memo.creator_id, payload)
                stats.updated += 1

        if on_progress:
            on_progress(stats.total)

    conn.commit()
    logger.info(
        "rebuilt %d memo(s): %d updated, %d unchanged, %d error(s)",
        stats.total,
        stats.updated,
        stats.unchanged,
        len(stats.errors),
    )
    return stats
