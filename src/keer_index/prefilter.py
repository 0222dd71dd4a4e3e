"""Storage-agnostic memo prefilter: scalar constraints plus AND-of-OR tag groups.

A prefilter is built per query, validated once with `validate()`, and handed
to whatever compiles it into a storage predicate. `validate()` returns either
`Satisfiable` (carrying the model and an in-memory `matches()` predicate) or
`Unsatisfiable`, in which case storage must not be touched at all.

Tag matching is case-sensitive for both exact and prefix options.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum


class Visibility(str, Enum):
    PRIVATE = "PRIVATE"
    PROTECTED = "PROTECTED"
    PUBLIC = "PUBLIC"


class MemoState(str, Enum):
    NORMAL = "NORMAL"
    ARCHIVED = "ARCHIVED"


class TagMatchKind(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"


@dataclass(frozen=True)
class TagMatchOption:
    kind: TagMatchKind
    value: str

    def __post_init__(self):
        # Raises ValueError for anything outside exact/prefix
        object.__setattr__(self, "kind", TagMatchKind(self.kind))

    def matches(self, tag: str) -> bool:
        if self.kind is TagMatchKind.EXACT:
            return tag == self.value
        return tag.startswith(self.value)


def exact(value: str) -> TagMatchOption:
    return TagMatchOption(TagMatchKind.EXACT, value)


def prefix(value: str) -> TagMatchOption:
    """Match hierarchical tags, e.g. prefix("project/") matches "project/alpha"."""
    return TagMatchOption(TagMatchKind.PREFIX, value)


@dataclass(frozen=True)
class TagMatchGroup:
    """Options combined with OR. An empty group matches nothing."""

    options: tuple[TagMatchOption, ...] = ()

    def __post_init__(self):
        seen = set()
        options = []
        for option in self.options:
            if option not in seen:
                seen.add(option)
                options.append(option)
        object.__setattr__(self, "options", tuple(options))

    def key(self) -> frozenset[TagMatchOption]:
        """Order-insensitive identity, used to spot duplicate groups."""
        return frozenset(self.options)


def option_matches(option: TagMatchOption, tags: Iterable[str]) -> bool:
    return any(option.matches(tag) for tag in tags)


def group_matches(group: TagMatchGroup, tags: Iterable[str]) -> bool:
    tags = tuple(tags)
    return any(option_matches(option, tags) for option in group.options)


def _as_group(group: TagMatchGroup | Iterable[TagMatchOption]) -> TagMatchGroup:
    if isinstance(group, TagMatchGroup):
        return group
    return TagMatchGroup(tuple(group))


def _unique_groups(groups: Iterable[TagMatchGroup]) -> tuple[TagMatchGroup, ...]:
    seen = set()
    out = []
    for group in groups:
        key = group.key()
        if key in seen:
            continue
        seen.add(key)
        out.append(group)
    return tuple(out)


@dataclass(frozen=True)
class MemoSQLPrefilter:
    """Which memos a query should return.

    Empty sets and None booleans are unconstrained. A memo must match every
    group in `tag_groups` and no group in `exclude_tag_groups`. An empty
    entry in `tag_groups` can never match, so construction marks the whole
    prefilter unsatisfiable; empty exclude groups exclude nothing and are dropped.
    """

    unsatisfiable: bool = False

    creator_ids: frozenset[int] = frozenset()
    visibility_in: frozenset[Visibility] = frozenset()
    state_in: frozenset[MemoState] = frozenset()
    pinned: bool | None = None

    has_link: bool | None = None
    has_task_list: bool | None = None
    has_code: bool | None = None
    has_incomplete_tasks: bool | None = None

    tag_groups: tuple[TagMatchGroup, ...] = field(default_factory=tuple)
    exclude_tag_groups: tuple[TagMatchGroup, ...] = field(default_factory=tuple)

    def __post_init__(self):
        setattr_ = object.__setattr__
        setattr_(self, "creator_ids", frozenset(self.creator_ids))
        setattr_(self, "visibility_in", frozenset(Visibility(v) for v in self.visibility_in))
        setattr_(self, "state_in", frozenset(MemoState(s) for s in self.state_in))

        tag_groups = _unique_groups(_as_group(g) for g in self.tag_groups)
        exclude_groups = _unique_groups(_as_group(g) for g in self.exclude_tag_groups)
        setattr_(self, "tag_groups", tag_groups)
        setattr_(self, "exclude_tag_groups", tuple(g for g in exclude_groups if g.options))

        if any(not group.options for group in tag_groups):
            setattr_(self, "unsatisfiable", True)

    def scalar_matches(self, memo) -> bool:
        if self.creator_ids and memo.creator_id not in self.creator_ids:
            return False
        if self.visibility_in and Visibility(memo.visibility) not in self.visibility_in:
            return False
        if self.state_in and MemoState(memo.state) not in self.state_in:
            return False
        if self.pinned is not None and bool(memo.pinned) != self.pinned:
            return False

        prop = memo.payload.property
        flags = (
            (self.has_link, prop.has_link),
            (self.has_task_list, prop.has_task_list),
            (self.has_code, prop.has_code),
            (self.has_incomplete_tasks, prop.has_incomplete_tasks),
        )
        return all(wanted is None or wanted == actual for wanted, actual in flags)

    def tags_match(self, tags: Iterable[str]) -> bool:
        tags = tuple(tags)
        if not all(group_matches(group, tags) for group in self.tag_groups):
            return False
        return not any(group_matches(group, tags) for group in self.exclude_tag_groups)


UNSATISFIABLE = MemoSQLPrefilter(unsatisfiable=True)


def empty_prefilter() -> MemoSQLPrefilter:
    return MemoSQLPrefilter()


@dataclass(frozen=True)
class Satisfiable:
    prefilter: MemoSQLPrefilter

    def matches(self, memo) -> bool:
        """In-memory predicate. `memo` needs creator_id, visibility, state, pinned and payload."""
        return self.prefilter.scalar_matches(memo) and self.prefilter.tags_match(memo.payload.tags)


@dataclass(frozen=True)
class Unsatisfiable:
    reason: str


def validate(prefilter: MemoSQLPrefilter) -> Satisfiable | Unsatisfiable:
    if not prefilter.unsatisfiable:
        return Satisfiable(prefilter)
    empty = [i for i, group in enumerate(prefilter.tag_groups) if not group.options]
    if empty:
        return Unsatisfiable(f"tag group(s) {empty} have no options")
    return Unsatisfiable("prefilter is marked unsatisfiable")


def _merge_set_and(a: frozenset, b: frozenset) -> tuple[frozenset, bool]:
    if not a:
        return b, False
    if not b:
        return a, False
    both = a & b
    return both, not both


def _merge_bool_and(a: bool | None, b: bool | None) -> tuple[bool | None, bool]:
    if a is None:
        return b, False
    if b is None:
        return a, False
    return a, a != b


def merge_and(a: MemoSQLPrefilter, b: MemoSQLPrefilter) -> MemoSQLPrefilter:
    """Prefilter accepting memos accepted by both `a` and `b`."""
    if a.unsatisfiable or b.unsatisfiable:
        return UNSATISFIABLE

    merged = {}
    for name in ("creator_ids", "visibility_in", "state_in"):
        value, conflict = _merge_set_and(getattr(a, name), getattr(b, name))
        if conflict:
            return UNSATISFIABLE
        merged[name] = value
    for name in ("pinned", "has_link", "has_task_list", "has_code", "has_incomplete_tasks"):
        value, conflict = _merge_bool_and(getattr(a, name), getattr(b, name))
        if conflict:
            return UNSATISFIABLE
        merged[name] = value

    return MemoSQLPrefilter(
        tag_groups=a.tag_groups + b.tag_groups,
        exclude_tag_groups=a.exclude_tag_groups + b.exclude_tag_groups,
        **merged,
    )


def _common_groups(a: tuple[TagMatchGroup, ...], b: tuple[TagMatchGroup, ...]) -> tuple[TagMatchGroup, ...]:
    keys_b = {group.key() for group in b}
    return tuple(group for group in a if group.key() in keys_b)


def merge_or(a: MemoSQLPrefilter, b: MemoSQLPrefilter) -> MemoSQLPrefilter:
    """Prefilter accepting every memo accepted by `a` or `b`.

    The result may accept more than the exact union; it never accepts less.
    """
    if a.unsatisfiable:
        return b
    if b.unsatisfiable:
        return a

    merged = {}
    for name in ("creator_ids", "visibility_in", "state_in"):
        left, right = getattr(a, name), getattr(b, name)
        merged[name] = left | right if left and right else frozenset()
    for name in ("pinned", "has_link", "has_task_list", "has_code", "has_incomplete_tasks"):
        left, right = getattr(a, name), getattr(b, name)
        merged[name] = left if left is not None and left == right else None

    tag_groups: tuple[TagMatchGroup, ...] = ()
    if a.tag_groups and b.tag_groups:
        tag_groups = _common_groups(a.tag_groups, b.tag_groups)
        if not tag_groups and len(a.tag_groups) == 1 and len(b.tag_groups) == 1:
            tag_groups = (TagMatchGroup(a.tag_groups[0].options + b.tag_groups[0].options),)

    return MemoSQLPrefilter(
        tag_groups=tag_groups,
        exclude_tag_groups=_common_groups(a.exclude_tag_groups, b.exclude_tag_groups),
        **merged,
    )
