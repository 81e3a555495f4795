import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

from distribution_engine import DistributionEngine
from ledger import InMemoryLedger
from placement_engine import PlacementEngine
from tree_store import InMemoryTreeStore


def _run_together(fn, args_list):
    """
    start every call at the same moment (barrier) and collect results.
    exceptions are re-raised by .result().
    """
    barrier = threading.Barrier(len(args_list))

    def call(args):
        barrier.wait()
        return fn(*args)

    with ThreadPoolExecutor(max_workers=len(args_list)) as pool:
        futures = [pool.submit(call, args) for args in args_list]
        return [f.result() for f in futures]


def test_concurrent_placements_under_one_referrer():
    """
    10 members referred by R at once, capacity 3.
    no two share a (parent, position); R gets exactly 3 and the other 7
    overflow breadth-first into A-level nodes.
    """
    tree = InMemoryTreeStore(max_children=3)
    tree.ensure_root("R")
    # every thread can lose at most 9 races, so 10 attempts always suffice
    engine = PlacementEngine(tree, retry_attempts=10, backoff_seconds=0.001)

    nodes = _run_together(engine.place_member, [("R", f"M{i}") for i in range(10)])

    slots = Counter((n.parent_id, n.position) for n in nodes)
    assert all(count == 1 for count in slots.values())
    assert len(tree.get_node("R").child_slots) == 3

    level1 = tree.get_node("R").child_slots
    overflow = [n for n in nodes if n.parent_id != "R"]
    assert len(overflow) == 7
    assert all(n.parent_id in level1 and n.level == 2 for n in overflow)

    # breadth-first: first child full, second full, third holds the last one
    per_parent = [len(tree.get_node(p).child_slots) for p in level1]
    assert per_parent == [3, 3, 1]


def test_concurrent_placements_of_same_member():
    """
    the same registration delivered twice at once: one wins, one AlreadyPlaced.
    """
    tree = InMemoryTreeStore(max_children=3)
    tree.ensure_root("R")
    engine = PlacementEngine(tree, retry_attempts=10, backoff_seconds=0)
    outcomes = []
    lock = threading.Lock()
    barrier = threading.Barrier(5)

    def place():
        barrier.wait()
        try:
            engine.place_member("R", "A")
            result = "placed"
        except ValueError:
            result = "rejected"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=place) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["placed"] + ["rejected"] * 4
    assert tree.count_nodes() == 2


def test_concurrent_distribution_of_same_payment():
    """
    8 approval retries of one payment racing: exactly one batch, one 'applied'.
    """
    tree = InMemoryTreeStore(max_children=3)
    tree.ensure_root("R")
    placement = PlacementEngine(tree, backoff_seconds=0)
    for m in ["A", "B", "C", "D"]:
        placement.place_member("R", m)
    ledger = InMemoryLedger()
    engine = DistributionEngine(tree, ledger, backoff_seconds=0)

    results = _run_together(engine.distribute, [("p1", "D", 30)] * 8)

    statuses = Counter(r.status for r in results)
    assert statuses == {"applied": 1, "duplicate": 7}
    assert len(ledger.list_by_payment("p1")) == 3
    assert ledger.aggregate_totals().payments_processed == 1

    # every caller sees the same committed batch
    applied = next(r for r in results if r.status == "applied")
    assert all(r.events == applied.events for r in results)


def test_concurrent_distribution_of_different_payments():
    tree = InMemoryTreeStore(max_children=3)
    tree.ensure_root("R")
    placement = PlacementEngine(tree, backoff_seconds=0)
    for m in ["A", "B", "C", "D"]:
        placement.place_member("R", m)
    ledger = InMemoryLedger()
    engine = DistributionEngine(tree, ledger, backoff_seconds=0)

    results = _run_together(engine.distribute, [(f"p{i}", "D", 30) for i in range(12)])

    assert all(r.status == "applied" for r in results)
    totals = ledger.aggregate_totals()
    assert totals.payments_processed == 12
    assert totals.per_beneficiary["A"] == 12 * 30
