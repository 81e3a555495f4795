import random

import pytest

from errors import (
    AlreadyPlaced,
    PlacementFailed,
    SlotConflict,
    TreeFull,
    UnknownReferrer,
    ValidationError,
)
from placement_engine import GLOBAL, PlacementEngine
from tree_store import InMemoryTreeStore


def _make_engine(**kwargs):
    """helper: fresh in-memory tree with root R and an engine over it."""
    store = InMemoryTreeStore(max_children=3)
    store.ensure_root("R")
    kwargs.setdefault("backoff_seconds", 0)
    return store, PlacementEngine(store, **kwargs)


def test_direct_referrals_fill_slots_in_order():
    """
    R refers A, B, C -> positions 0, 1, 2 at level 1.
    """
    store, engine = _make_engine()

    a = engine.place_member("R", "A")
    b = engine.place_member("R", "B")
    c = engine.place_member("R", "C")

    assert (a.parent_id, a.level, a.position) == ("R", 1, 0)
    assert (b.parent_id, b.level, b.position) == ("R", 1, 1)
    assert (c.parent_id, c.level, c.position) == ("R", 1, 2)
    assert store.get_node("R").child_slots == ("A", "B", "C")


def test_overflow_goes_to_first_bfs_match():
    """
    R is full with A, B, C.
    D referred by R -> under A (level 2, position 0).
    """
    store, engine = _make_engine()
    for m in ["A", "B", "C"]:
        engine.place_member("R", m)

    d = engine.place_member("R", "D")

    assert d.parent_id == "A"
    assert d.level == 2
    assert d.position == 0


def test_overflow_fills_level_left_to_right():
    """
    with R full, the next nine overflow placements fill A, then B, then C.
    """
    store, engine = _make_engine()
    for m in ["A", "B", "C"]:
        engine.place_member("R", m)

    parents = [engine.place_member("R", f"X{i}").parent_id for i in range(9)]

    assert parents == ["A"] * 3 + ["B"] * 3 + ["C"] * 3
    # the tenth goes one level deeper, under A's first child
    assert engine.place_member("R", "X9").parent_id == "X0"


def test_full_referrer_never_gets_a_fourth_child():
    store, engine = _make_engine()
    for m in ["A", "B", "C"]:
        engine.place_member("R", m)
    for i in range(20):
        node = engine.place_member("R", f"M{i}")
        assert node.parent_id != "R"

    assert len(store.get_node("R").child_slots) == 3


def test_subtree_first_stays_under_referrer():
    """
    R -> A, B, C; A -> A1, A2, A3 (A is full).
    subtree_first: a member referred by A lands under A1, not under B.
    """
    store, engine = _make_engine()
    for m in ["A", "B", "C"]:
        engine.place_member("R", m)
    for m in ["A1", "A2", "A3"]:
        engine.place_member("A", m)

    node = engine.place_member("A", "NEW")

    assert node.parent_id == "A1"
    assert node.level == 3


def test_global_policy_searches_from_root():
    """
    same tree as above, but with the global policy the first open slot in the
    whole tree is under B.
    """
    store, engine = _make_engine(overflow_policy=GLOBAL)
    for m in ["A", "B", "C"]:
        engine.place_member("R", m)
    for m in ["A1", "A2", "A3"]:
        engine.place_member("A", m)

    node = engine.place_member("A", "NEW")

    assert node.parent_id == "B"
    assert node.level == 2


def test_subtree_first_falls_back_to_whole_tree_when_subtree_is_capped():
    """
    max_depth=2: A's children sit at the depth limit and cannot take children,
    so A's subtree has no room and the search continues from the root.
    """
    store, engine = _make_engine(max_depth=2)
    for m in ["A", "B", "C"]:
        engine.place_member("R", m)
    for m in ["A1", "A2", "A3"]:
        engine.place_member("A", m)

    node = engine.place_member("A", "NEW")

    assert node.parent_id == "B"


def test_tree_full_when_depth_limit_reached():
    store, engine = _make_engine(max_depth=1)
    for m in ["A", "B", "C"]:
        engine.place_member(None, m)

    with pytest.raises(TreeFull):
        engine.place_member("A", "D")
    assert store.get_node("D") is None


def test_no_referrer_attaches_under_root():
    store, engine = _make_engine()

    node = engine.place_member(None, "A")

    assert node.parent_id == "R"
    assert node.level == 1


def test_unknown_referrer():
    store, engine = _make_engine()

    with pytest.raises(UnknownReferrer):
        engine.place_member("GHOST", "A")
    assert store.get_node("A") is None


def test_already_placed():
    store, engine = _make_engine()
    engine.place_member("R", "A")

    with pytest.raises(AlreadyPlaced):
        engine.place_member("R", "A")
    with pytest.raises(AlreadyPlaced):
        engine.place_member(None, "R")


@pytest.mark.parametrize(
    "referrer, member",
    [
        ("R", ""),
        ("R", "   "),
        ("R", " A"),
        ("", "A"),
        ("A", "A"),
        ("R", 42),
    ],
)
def test_malformed_input_rejected_before_any_write(referrer, member):
    store, engine = _make_engine()

    with pytest.raises(ValidationError):
        engine.place_member(referrer, member)
    assert store.count_nodes() == 1


def test_levels_and_positions_hold_for_random_referrals():
    """
    for every placement: level == parent.level + 1 and the position is the
    index the node took in its parent's child slots.
    """
    store, engine = _make_engine()
    rng = random.Random(7)
    members = ["R"]

    for i in range(60):
        referrer = rng.choice(members)
        new_id = f"M{i}"
        before = {n.member_id: len(n.child_slots) for n in store.list_nodes()}

        node = engine.place_member(referrer, new_id)
        parent = store.get_node(node.parent_id)

        assert node.level == parent.level + 1
        assert node.position == before[parent.member_id]
        assert parent.child_slots[node.position] == new_id
        assert len(parent.child_slots) <= 3
        members.append(new_id)

    assert store.count_nodes() == 61


class _FlakyStore(InMemoryTreeStore):
    """loses the first `failures` slot claims as if another writer got there first."""

    def __init__(self, failures):
        super().__init__(max_children=3)
        self.failures = failures
        self.claims = 0

    def create_node(self, member_id, parent_id, level, position):
        self.claims += 1
        if self.claims <= self.failures:
            raise SlotConflict(parent_id, position)
        return super().create_node(member_id, parent_id, level, position)


def test_slot_conflict_is_retried():
    store = _FlakyStore(failures=2)
    store.ensure_root("R")
    engine = PlacementEngine(store, retry_attempts=3, backoff_seconds=0)

    node = engine.place_member("R", "A")

    assert node.parent_id == "R"
    assert store.claims == 3


def test_placement_failed_after_exhausting_retries():
    store = _FlakyStore(failures=100)
    store.ensure_root("R")
    engine = PlacementEngine(store, retry_attempts=3, backoff_seconds=0)

    with pytest.raises(PlacementFailed):
        engine.place_member("R", "A")
    assert store.claims == 3
    assert store.get_node("A") is None


def test_unknown_overflow_policy_rejected():
    store = InMemoryTreeStore()
    with pytest.raises(ValueError):
        PlacementEngine(store, overflow_policy="depth_first")


class _CountingStore(InMemoryTreeStore):
    """counts per-node child reads."""

    def __init__(self):
        super().__init__(max_children=3)
        self.child_reads = 0

    def list_children(self, member_id):
        self.child_reads += 1
        return super().list_children(member_id)


def test_overflow_search_is_one_store_query():
    """
    a full tree of 13 nodes: the overflow search asks the store once
    instead of reading children node by node.
    """
    store = _CountingStore()
    store.ensure_root("R")
    engine = PlacementEngine(store, backoff_seconds=0)
    for i in range(12):
        engine.place_member("R", f"M{i}")

    node = engine.place_member("R", "NEW")

    assert node.level == 3
    assert store.child_reads == 0
