"""Markdown parsing: extract tags and content property flags from memo text."""

import logging
from dataclasses import dataclass, field
from enum import Enum

from markdown_it import MarkdownIt
from markdown_it.rules_core import StateCore
from markdown_it.token import Token
from markdown_it.tree import SyntaxTreeNode
from mdit_py_plugins.tasklists import tasklists_plugin

from keer_index.tags import tag_plugin

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """Memo content could not be parsed. No payload is produced."""


@dataclass(frozen=True)
class MemoPayloadProperty:
    has_link: bool = False
    has_code: bool = False
    has_task_list: bool = False
    has_incomplete_tasks: bool = False

    def __post_init__(self):
        if self.has_incomplete_tasks and not self.has_task_list:
            raise ValueError("has_incomplete_tasks requires has_task_list")

    def to_dict(self) -> dict[str, bool]:
        return {
            "hasLink": self.has_link,
            "hasCode": self.has_code,
            "hasTaskList": self.has_task_list,
            "hasIncompleteTasks": self.has_incomplete_tasks,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MemoPayloadProperty":
        return cls(
            has_link=bool(data.get("hasLink", False)),
            has_code=bool(data.get("hasCode", False)),
            has_task_list=bool(data.get("hasTaskList", False)),
            has_incomplete_tasks=bool(data.get("hasIncompleteTasks", False)),
        )


@dataclass(frozen=True)
class MemoPayload:
    """Structured signals extracted from one memo body."""

    tags: tuple[str, ...] = ()  # first-occurrence order, case preserved
    property: MemoPayloadProperty = field(default_factory=MemoPayloadProperty)

    def to_dict(self) -> dict:
        return {"tags": list(self.tags), "property": self.property.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "MemoPayload":
        return cls(
            tags=tuple(data.get("tags") or ()),
            property=MemoPayloadProperty.from_dict(data.get("property") or {}),
        )


class NodeKind(Enum):
    TEXT = "text"
    LINK = "link"
    CODE_SPAN = "code_span"
    CODE_BLOCK = "code_block"
    TASK_CHECKBOX = "task_checkbox"
    TAG = "tag"
    OTHER = "other"


# markdown-it marks `<https://...>` autolinks and linkified bare URLs on link_open.markup
AUTOLINK_MARKUP = ("autolink", "linkify")

# Raw HTML is disabled, so html_inline nodes only come from the task list rules
TASK_CHECKBOX_CLASS = "task-list-item-checkbox"


def classify(node: SyntaxTreeNode) -> NodeKind:
    """Map a syntax tree node onto the closed set of kinds the walker knows."""
    kind = node.type
    if kind == "text":
        return NodeKind.TEXT
    if kind == "tag":
        return NodeKind.TAG
    if kind == "link":
        if node.markup in AUTOLINK_MARKUP:
            return NodeKind.OTHER
        return NodeKind.LINK
    if kind == "code_inline":
        return NodeKind.CODE_SPAN
    if kind in ("fence", "code_block"):
        return NodeKind.CODE_BLOCK
    if kind == "html_inline" and TASK_CHECKBOX_CLASS in node.content:
        return NodeKind.TASK_CHECKBOX
    return NodeKind.OTHER


def is_checked(node: SyntaxTreeNode) -> bool:
    return 'checked="checked"' in node.content


def unique_preserve_case(tags: list[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    result = []
    for tag in tags:
        if tag not in seen:
            seen.add(tag)
            result.append(tag)
    return tuple(result)


BARE_CHECKBOXES = {"[ ]": False, "[x]": True, "[X]": True}


def bare_task_rule(state: StateCore) -> None:
    """Turn a list item holding nothing but `[ ]` or `[x]` into a task checkbox.

    The task list plugin wants text after the box; `- [ ]` on its own is still a task.
    """
    tokens = state.tokens
    for i in range(2, len(tokens)):
        token = tokens[i]
        if token.type != "inline" or tokens[i - 1].type != "paragraph_open":
            continue
        if tokens[i - 2].type != "list_item_open":
            continue
        checked = BARE_CHECKBOXES.get(token.content.strip())
        if checked is None:
            continue
        checkbox = Token("html_inline", "", 0)
        checked_attr = 'checked="checked" ' if checked else ""
        checkbox.content = f'<input class="{TASK_CHECKBOX_CLASS}" {checked_attr}disabled="disabled" type="checkbox">'
        token.children = [checkbox]
        token.content = ""


def build_markdown() -> MarkdownIt:
    """Compose the parser: CommonMark + GFM tables/strikethrough/linkify + task lists + tags.

    Inline rules run in ruler order; the tag rule goes last so code spans,
    escapes, entities and links claim their spans first. Bare URLs are
    linkified, so a `#fragment` inside one is never a tag.
    """
    md = MarkdownIt("commonmark", {"html": False, "linkify": True})
    md.enable(["table", "strikethrough", "linkify"])
    md.use(tasklists_plugin)
    md.core.ruler.after("github-tasklists", "bare-tasklists", bare_task_rule)
    md.use(tag_plugin)
    return md


def walk(root: SyntaxTreeNode) -> MemoPayload:
    """Collect tags and property flags from a parsed tree in one pre-order pass."""
    tags: list[str] = []
    has_link = has_code = has_task_list = has_incomplete_tasks = False

    for node in root.walk():
        kind = classify(node)
        if kind is NodeKind.TAG:
            tags.append(node.content)
        elif kind is NodeKind.LINK:
            has_link = True
        elif kind is NodeKind.CODE_SPAN or kind is NodeKind.CODE_BLOCK:
            has_code = True
        elif kind is NodeKind.TASK_CHECKBOX:
            has_task_list = True
            if not is_checked(node):
                has_incomplete_tasks = True
        elif kind is NodeKind.TEXT or kind is NodeKind.OTHER:
            continue
        else:
            raise AssertionError(f"unhandled node kind: {kind}")

    return MemoPayload(
        tags=unique_preserve_case(tags),
        property=MemoPayloadProperty(
            has_link=has_link,
            has_code=has_code,
            has_task_list=has_task_list,
            has_incomplete_tasks=has_incomplete_tasks,
        ),
    )


class MarkdownService:
    """Parses memo content and extracts its payload. Safe to share across threads."""

    def __init__(self, md: MarkdownIt | None = None):
        self.md = md or build_markdown()

    def parse(self, content: str | bytes) -> SyntaxTreeNode:
        if isinstance(content, bytes):
            try:
                content = content.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ExtractionError(f"memo content is not valid UTF-8: {e}") from e
        return SyntaxTreeNode(self.md.parse(content))

    def extract_payload(self, content: str | bytes) -> MemoPayload:
        payload = walk(self.parse(content))
        logger.debug("extracted %d tag(s), property=%s", len(payload.tags), payload.property)
        return payload

    def extract_tags(self, content: str | bytes) -> list[str]:
        return list(self.extract_payload(content).tags)


_default_service = MarkdownService()


def extract_payload(content: str | bytes) -> MemoPayload:
    """Parse memo content and return its tags and property flags.

    Raises ExtractionError if bytes input is not valid UTF-8.
    """
    return _default_service.extract_payload(content)


def extract_tags(content: str | bytes) -> list[str]:
    return _default_service.extract_tags(content)
