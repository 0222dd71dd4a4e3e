"""Tests for the memo prefilter model."""

from dataclasses import dataclass

import pytest

from keer_index.parser import MemoPayload, MemoPayloadProperty
from keer_index.prefilter import (
    UNSATISFIABLE,
    MemoSQLPrefilter,
    MemoState,
    Satisfiable,
    TagMatchGroup,
    TagMatchKind,
    TagMatchOption,
    Unsatisfiable,
    Visibility,
    empty_prefilter,
    exact,
    group_matches,
    merge_and,
    merge_or,
    option_matches,
    prefix,
    validate,
)


@dataclass
class FakeMemo:
    tags: tuple[str, ...] = ()
    creator_id: int = 1
    visibility: Visibility = Visibility.PRIVATE
    state: MemoState = MemoState.NORMAL
    pinned: bool = False
    prop: MemoPayloadProperty = MemoPayloadProperty()

    @property
    def payload(self) -> MemoPayload:
        return MemoPayload(tags=self.tags, property=self.prop)


def accepts(prefilter: MemoSQLPrefilter, memo: FakeMemo) -> bool:
    check = validate(prefilter)
    assert isinstance(check, Satisfiable)
    return check.matches(memo)


class TestTagMatchOption:
    def test_exact(self):
        assert option_matches(exact("a"), ["b", "a"])
        assert not option_matches(exact("a"), ["ab"])

    def test_prefix_hierarchical(self):
        assert option_matches(prefix("project/"), ["project/alpha"])
        assert not option_matches(prefix("project/"), ["project"])

    def test_case_sensitive(self):
        assert not option_matches(exact("Work"), ["work"])
        assert not option_matches(prefix("Proj"), ["project"])

    def test_kind_coerced_from_string(self):
        assert TagMatchOption("prefix", "x").kind is TagMatchKind.PREFIX

    def test_invalid_kind_fails_fast(self):
        with pytest.raises(ValueError):
            TagMatchOption("regex", "x")


class TestTagMatchGroup:
    def test_or_within_group(self):
        group = TagMatchGroup((exact("a"), exact("b")))
        assert group_matches(group, ["b"])
        assert not group_matches(group, ["c"])

    def test_empty_group_matches_nothing(self):
        assert not group_matches(TagMatchGroup(), ["a"])

    def test_duplicate_options_dropped(self):
        group = TagMatchGroup((exact("a"), exact("a"), prefix("a")))
        assert group.options == (exact("a"), prefix("a"))


class TestMemoSQLPrefilter:
    def test_any_of_group(self):
        pf = MemoSQLPrefilter(tag_groups=[[exact("a"), exact("b")]])
        assert accepts(pf, FakeMemo(tags=("a",)))
        assert accepts(pf, FakeMemo(tags=("b",)))
        assert not accepts(pf, FakeMemo(tags=("c",)))

    def test_all_groups_required(self):
        pf = MemoSQLPrefilter(tag_groups=[[exact("a")], [exact("b")]])
        assert accepts(pf, FakeMemo(tags=("a", "b")))
        assert not accepts(pf, FakeMemo(tags=("a",)))
        assert not accepts(pf, FakeMemo(tags=("b",)))

    def test_exclude_wins_over_tag_groups(self):
        pf = MemoSQLPrefilter(tag_groups=[[exact("a")]], exclude_tag_groups=[[exact("c")]])
        assert accepts(pf, FakeMemo(tags=("a",)))
        assert not accepts(pf, FakeMemo(tags=("a", "c")))
        assert not accepts(MemoSQLPrefilter(exclude_tag_groups=[[exact("c")]]), FakeMemo(tags=("c",)))

    def test_prefix_exclude(self):
        pf = MemoSQLPrefilter(exclude_tag_groups=[[prefix("archive/")]])
        assert not accepts(pf, FakeMemo(tags=("archive/2023",)))
        assert accepts(pf, FakeMemo(tags=("archived",)))

    def test_empty_tag_group_is_unsatisfiable(self):
        pf = MemoSQLPrefilter(tag_groups=[[]])
        assert pf.unsatisfiable
        assert isinstance(validate(pf), Unsatisfiable)

    def test_empty_tag_group_among_others_is_unsatisfiable(self):
        pf = MemoSQLPrefilter(tag_groups=[[exact("a")], TagMatchGroup()])
        assert pf.unsatisfiable

    def test_empty_exclude_group_is_noop(self):
        pf = MemoSQLPrefilter(exclude_tag_groups=[[]])
        assert not pf.unsatisfiable
        assert pf.exclude_tag_groups == ()
        assert accepts(pf, FakeMemo(tags=("anything",)))

    def test_no_groups_is_unconstrained(self):
        pf = empty_prefilter()
        assert not pf.unsatisfiable
        assert accepts(pf, FakeMemo())
        assert accepts(pf, FakeMemo(tags=("x",)))

    def test_duplicate_groups_collapsed(self):
        pf = MemoSQLPrefilter(tag_groups=[[exact("a"), exact("b")], [exact("b"), exact("a")]])
        assert len(pf.tag_groups) == 1

    def test_scalar_constraints(self):
        pf = MemoSQLPrefilter(
            creator_ids=[1, 2],
            visibility_in=["PUBLIC"],
            state_in=[MemoState.NORMAL],
            pinned=True,
        )
        good = FakeMemo(creator_id=2, visibility=Visibility.PUBLIC, pinned=True)
        assert accepts(pf, good)
        assert not accepts(pf, FakeMemo(creator_id=3, visibility=Visibility.PUBLIC, pinned=True))
        assert not accepts(pf, FakeMemo(creator_id=2, visibility=Visibility.PRIVATE, pinned=True))
        assert not accepts(pf, FakeMemo(creator_id=2, visibility=Visibility.PUBLIC, pinned=False))
        assert not accepts(
            pf, FakeMemo(creator_id=2, visibility=Visibility.PUBLIC, pinned=True, state=MemoState.ARCHIVED)
        )

    @pytest.mark.parametrize("field_name", ["has_link", "has_code", "has_task_list", "has_incomplete_tasks"])
    def test_property_flags_tri_state(self, field_name: str):
        flags = {field_name: True}
        if field_name == "has_incomplete_tasks":
            flags["has_task_list"] = True
        flagged = FakeMemo(prop=MemoPayloadProperty(**flags))
        plain = FakeMemo()

        want_true = MemoSQLPrefilter(**{field_name: True})
        want_false = MemoSQLPrefilter(**{field_name: False})

        assert accepts(want_true, flagged)
        assert not accepts(want_true, plain)
        assert accepts(want_false, plain)
        assert not accepts(want_false, flagged)
        assert accepts(empty_prefilter(), flagged)

    def test_invalid_visibility_fails_fast(self):
        with pytest.raises(ValueError):
            MemoSQLPrefilter(visibility_in=["SECRET"])

    def test_is_immutable(self):
        pf = empty_prefilter()
        with pytest.raises(AttributeError):
            pf.unsatisfiable = True  # type: ignore[misc]


class TestMergeAnd:
    def test_combines_groups(self):
        merged = merge_and(
            MemoSQLPrefilter(tag_groups=[[exact("a")]]),
            MemoSQLPrefilter(tag_groups=[[exact("b")]], exclude_tag_groups=[[exact("c")]]),
        )
        assert merged.tag_groups == (TagMatchGroup((exact("a"),)), TagMatchGroup((exact("b"),)))
        assert merged.exclude_tag_groups == (TagMatchGroup((exact("c"),)),)

    def test_intersects_sets(self):
        merged = merge_and(MemoSQLPrefilter(creator_ids=[1, 2]), MemoSQLPrefilter(creator_ids=[2, 3]))
        assert merged.creator_ids == frozenset([2])

    def test_disjoint_sets_unsatisfiable(self):
        merged = merge_and(
            MemoSQLPrefilter(state_in=[MemoState.NORMAL]),
            MemoSQLPrefilter(state_in=[MemoState.ARCHIVED]),
        )
        assert merged.unsatisfiable

    def test_conflicting_booleans_unsatisfiable(self):
        assert merge_and(MemoSQLPrefilter(pinned=True), MemoSQLPrefilter(pinned=False)).unsatisfiable

    def test_unconstrained_side_keeps_other(self):
        merged = merge_and(empty_prefilter(), MemoSQLPrefilter(has_code=True, visibility_in=["PUBLIC"]))
        assert merged.has_code is True
        assert merged.visibility_in == frozenset([Visibility.PUBLIC])

    def test_unsatisfiable_propagates(self):
        assert merge_and(UNSATISFIABLE, empty_prefilter()).unsatisfiable


class TestMergeOr:
    def test_one_unsatisfiable_side_yields_other(self):
        other = MemoSQLPrefilter(has_link=True)
        assert merge_or(UNSATISFIABLE, other) == other
        assert merge_or(other, UNSATISFIABLE) == other

    def test_both_unsatisfiable(self):
        assert merge_or(UNSATISFIABLE, UNSATISFIABLE).unsatisfiable

    def test_single_groups_merged_into_one(self):
        merged = merge_or(
            MemoSQLPrefilter(tag_groups=[[exact("a")]]),
            MemoSQLPrefilter(tag_groups=[[prefix("b/")]]),
        )
        assert merged.tag_groups == (TagMatchGroup((exact("a"), prefix("b/"))),)

    def test_common_groups_kept(self):
        merged = merge_or(
            MemoSQLPrefilter(tag_groups=[[exact("a")], [exact("b")]]),
            MemoSQLPrefilter(tag_groups=[[exact("a")], [exact("c")]]),
        )
        assert merged.tag_groups == (TagMatchGroup((exact("a"),)),)

    def test_unconstrained_side_drops_constraint(self):
        merged = merge_or(MemoSQLPrefilter(tag_groups=[[exact("a")]], creator_ids=[1]), empty_prefilter())
        assert merged.tag_groups == ()
        assert merged.creator_ids == frozenset()

    def test_booleans_kept_only_when_equal(self):
        assert merge_or(MemoSQLPrefilter(pinned=True), MemoSQLPrefilter(pinned=True)).pinned is True
        assert merge_or(MemoSQLPrefilter(pinned=True), MemoSQLPrefilter(pinned=False)).pinned is None

    def test_sets_union(self):
        merged = merge_or(MemoSQLPrefilter(creator_ids=[1]), MemoSQLPrefilter(creator_ids=[2]))
        assert merged.creator_ids == frozenset([1, 2])

    def test_never_rejects_what_either_side_accepts(self):
        a = MemoSQLPrefilter(tag_groups=[[exact("a")]], has_code=True, exclude_tag_groups=[[exact("x")]])
        b = MemoSQLPrefilter(tag_groups=[[exact("b")]], pinned=True)
        merged = merge_or(a, b)

        memo_a = FakeMemo(tags=("a",), prop=MemoPayloadProperty(has_code=True))
        memo_b = FakeMemo(tags=("b", "x"), pinned=True)
        assert accepts(a, memo_a) and accepts(merged, memo_a)
        assert accepts(b, memo_b) and accepts(merged, memo_b)
