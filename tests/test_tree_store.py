import pytest

from errors import DuplicateNode, SlotConflict, TreeNotInitialized, ValidationError
from tree_store import InMemoryTreeStore


def _make_store():
    """helper: fresh store with root R."""
    store = InMemoryTreeStore(max_children=3)
    store.ensure_root("R")
    return store


def test_get_root_before_bootstrap_raises():
    store = InMemoryTreeStore()

    with pytest.raises(TreeNotInitialized):
        store.get_root()
    assert store.list_nodes() == []


def test_ensure_root_is_idempotent():
    store = InMemoryTreeStore()
    first = store.ensure_root("R")
    second = store.ensure_root("R")
    other = store.ensure_root("SOMEONE_ELSE")

    assert first.member_id == second.member_id == other.member_id == "R"
    assert first.level == 0
    assert first.parent_id is None
    assert store.count_nodes() == 1


def test_create_node_updates_parent_child_slots():
    store = _make_store()

    a = store.create_node("A", "R", 1, 0)
    b = store.create_node("B", "R", 1, 1)

    assert a.level == 1 and a.position == 0
    assert b.position == 1
    assert store.get_node("R").child_slots == ("A", "B")
    assert [n.member_id for n in store.list_children("R")] == ["A", "B"]
    assert store.get_node("A").child_slots == ()


def test_create_node_duplicate_member():
    store = _make_store()
    store.create_node("A", "R", 1, 0)

    with pytest.raises(DuplicateNode):
        store.create_node("A", "R", 1, 1)


def test_create_node_taken_position_is_a_conflict():
    """
    two writers that both read "R has 0 children" both try position 0.
    the second one must lose.
    """
    store = _make_store()
    store.create_node("A", "R", 1, 0)

    with pytest.raises(SlotConflict):
        store.create_node("B", "R", 1, 0)
    assert store.get_node("B") is None


def test_create_node_full_parent_is_a_conflict():
    store = _make_store()
    for i, m in enumerate(["A", "B", "C"]):
        store.create_node(m, "R", 1, i)

    # stale read: writer still thinks position 2 is free
    with pytest.raises(SlotConflict):
        store.create_node("D", "R", 1, 2)
    with pytest.raises(ValidationError):
        store.create_node("D", "R", 1, 3)
    assert len(store.get_node("R").child_slots) == 3


def test_create_node_validates_level_and_parent():
    store = _make_store()

    with pytest.raises(ValidationError):
        store.create_node("A", "R", 2, 0)  # wrong level
    with pytest.raises(ValidationError):
        store.create_node("A", "GHOST", 1, 0)  # unknown parent
    with pytest.raises(ValidationError):
        store.create_node("", "R", 1, 0)  # blank id

    assert store.count_nodes() == 1


def test_list_nodes_is_level_order():
    """
    R -> A, B
    A -> A1
    B -> B1
    level order: R, A, B, A1, B1
    """
    store = _make_store()
    store.create_node("A", "R", 1, 0)
    store.create_node("B", "R", 1, 1)
    store.create_node("B1", "B", 2, 0)
    store.create_node("A1", "A", 2, 0)

    assert [n.member_id for n in store.list_nodes()] == ["R", "A", "B", "A1", "B1"]


def test_returned_nodes_are_snapshots():
    """
    a node fetched before a child is added keeps its old child_slots;
    nodes are immutable values, not live references.
    """
    store = _make_store()
    before = store.get_node("R")
    store.create_node("A", "R", 1, 0)

    assert before.child_slots == ()
    assert store.get_node("R").child_slots == ("A",)


def test_get_ancestors_nearest_first():
    store = _make_store()
    store.create_node("A", "R", 1, 0)
    store.create_node("A1", "A", 2, 0)
    store.create_node("A11", "A1", 3, 0)

    chain = store.get_ancestors("A11")

    assert [n.member_id for n in chain] == ["A1", "A", "R"]
    assert [n.level for n in chain] == [2, 1, 0]
    assert store.get_ancestors("R") == []
    assert store.get_ancestors("GHOST") == []


def test_find_open_node_level_order():
    """
    R -> A, B, C (full)
    A -> A1, A2, A3 (full)
    first open node under R is B; under A it is A1.
    """
    store = _make_store()
    for i, m in enumerate(["A", "B", "C"]):
        store.create_node(m, "R", 1, i)
    for i, m in enumerate(["A1", "A2", "A3"]):
        store.create_node(m, "A", 2, i)

    assert store.find_open_node("R").member_id == "B"
    assert store.find_open_node("A").member_id == "A1"
    assert store.find_open_node("GHOST") is None


def test_find_open_node_respects_max_level():
    store = _make_store()
    for i, m in enumerate(["A", "B", "C"]):
        store.create_node(m, "R", 1, i)

    # level-1 nodes sit at the limit and cannot take children
    assert store.find_open_node("R", max_level=1) is None
    assert store.find_open_node("R", max_level=2).member_id == "A"
