"""MCP server exposing memo content extraction, tag filtering and index rebuild."""

import os
from pathlib import Path

from mcp.server.fastmcp import Context, FastMCP

from keer_index import db as db_module
from keer_index.db import IndexedMemo, get_connection, init_db, list_memos, rebuild_payloads
from keer_index.parser import ExtractionError, extract_payload
from keer_index.prefilter import MemoSQLPrefilter, TagMatchGroup, exact, prefix

mcp = FastMCP(
    name="keer-index",
    instructions="Extract tags and content flags from memo markdown and filter stored memos by tag.",
)


def resolve_db_path() -> Path:
    """KEER_INDEX_DB env var, falling back to the default database path."""
    db_env = os.environ.get("KEER_INDEX_DB", "").strip()
    if db_env:
        return Path(db_env).expanduser().resolve()
    return db_module.DB_PATH


def _open():
    conn = get_connection(resolve_db_path())
    init_db(conn)
    return conn


def _memo_to_dict(memo: IndexedMemo) -> dict:
    return {
        "id": memo.id,
        "creator_id": memo.creator_id,
        "visibility": memo.visibility.value,
        "state": memo.state.value,
        "pinned": memo.pinned,
        "content": memo.content,
        **memo.payload.to_dict(),
    }


@mcp.tool()
def extract(content: str) -> dict:
    """Extract the tag list and property flags (hasLink, hasCode, hasTaskList,
    hasIncompleteTasks) from a memo's markdown content."""
    try:
        return extract_payload(content).to_dict()
    except ExtractionError as e:
        return {"error": str(e)}


@mcp.tool()
def filter_memos(
    creator_id: int | None = None,
    all_tags: list[str] | None = None,
    any_tags: list[str] | None = None,
    tag_prefixes: list[str] | None = None,
    exclude_tags: list[str] | None = None,
    has_link: bool | None = None,
    has_code: bool | None = None,
    has_task_list: bool | None = None,
    has_incomplete_tasks: bool | None = None,
    pinned: bool | None = None,
    limit: int = 20,
) -> list[dict]:
    """List stored memos matching tag and property constraints.

    Args:
        all_tags: Memo must carry every one of these tags
        any_tags: Memo must carry at least one of these tags (or one of tag_prefixes)
        tag_prefixes: Hierarchical prefixes, e.g. "project/" matches "project/alpha"
        exclude_tags: Memos carrying any of these tags are dropped
        limit: Maximum number of results to return
    """
    groups = [TagMatchGroup((exact(tag),)) for tag in all_tags or []]
    if any_tags is not None or tag_prefixes is not None:
        # An explicitly empty list matches nothing
        options = [exact(tag) for tag in any_tags or []] + [prefix(p) for p in tag_prefixes or []]
        groups.append(TagMatchGroup(tuple(options)))
    excludes = [TagMatchGroup((exact(tag),)) for tag in exclude_tags or []]

    prefilter = MemoSQLPrefilter(
        creator_ids=frozenset([creator_id]) if creator_id is not None else frozenset(),
        pinned=pinned,
        has_link=has_link,
        has_code=has_code,
        has_task_list=has_task_list,
        has_incomplete_tasks=has_incomplete_tasks,
        tag_groups=tuple(groups),
        exclude_tag_groups=tuple(excludes),
    )

    conn = _open()
    try:
        memos = list_memos(conn, prefilter, limit=limit)
    finally:
        conn.close()
    return [_memo_to_dict(memo) for memo in memos]


@mcp.tool()
async def rebuild(ctx: Context | None = None) -> dict:
    """Re-run extraction over every stored memo and overwrite its tags and flags."""

    async def log(msg: str) -> None:
        if ctx:
            await ctx.info(msg)

    conn = _open()
    try:
        await log("Rebuilding memo payloads...")
        stats = rebuild_payloads(conn)
    finally:
        conn.close()

    await log(f"Rebuilt {stats.total} memos ({stats.updated} changed)")
    return {
        "total": stats.total,
        "updated": stats.updated,
        "unchanged": stats.unchanged,
        "errors": stats.errors,
    }


def main() -> None:
    """Entry point for the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
