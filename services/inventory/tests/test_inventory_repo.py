"""Repository tests for keyed, all-or-nothing stock reservations."""

import threading
import uuid

from sqlalchemy import create_engine

from services.inventory.repo import InventoryRepo, init_db


def test_reserve_decrements_every_line(repo):
    rid = str(uuid.uuid4())
    ok, shortages = repo.reserve(rid, [("runner-01", 8, 2), ("court-02", 10, 1)])

    assert ok is True
    assert shortages == []
    assert repo.stock("runner-01", 8) == 3
    assert repo.stock("court-02", 10) == 2
    assert repo.reservation_status(rid) == "held"


def test_reserve_is_all_or_nothing(repo):
    ok, shortages = repo.reserve(str(uuid.uuid4()), [("runner-01", 8, 2), ("court-02", 9, 2)])

    assert ok is False
    assert shortages == [
        {"product_id": "court-02", "size": 9, "requested": 2, "available": 1, "reason": "INSUFFICIENT_STOCK"}
    ]
    assert repo.stock("runner-01", 8) == 5
    assert repo.stock("court-02", 9) == 1


def test_reserve_reports_every_failing_line(repo):
    ok, shortages = repo.reserve(
        str(uuid.uuid4()),
        [("runner-01", 9, 3), ("court-02", 9, 2), ("runner-01", 12, 1), ("ghost-99", 9, 1)],
    )

    assert ok is False
    reasons = {(s["product_id"], s["size"]): s["reason"] for s in shortages}
    assert reasons == {
        ("runner-01", 9): "INSUFFICIENT_STOCK",
        ("court-02", 9): "INSUFFICIENT_STOCK",
        ("runner-01", 12): "UNKNOWN_SIZE",
        ("ghost-99", 9): "UNKNOWN_PRODUCT",
    }


def test_refused_reservation_leaves_no_record(repo):
    rid = str(uuid.uuid4())
    repo.reserve(rid, [("court-02", 9, 5)])
    assert repo.reservation_status(rid) is None


def test_duplicate_lines_are_checked_together(repo):
    ok, shortages = repo.reserve(str(uuid.uuid4()), [("runner-01", 9, 1), ("runner-01", 9, 2)])

    assert ok is False
    assert shortages[0]["requested"] == 3
    assert repo.stock("runner-01", 9) == 2


def test_reserve_replay_does_not_decrement_twice(repo):
    rid = str(uuid.uuid4())
    assert repo.reserve(rid, [("runner-01", 8, 2)]) == (True, [])
    assert repo.reserve(rid, [("runner-01", 8, 2)]) == (True, [])
    assert repo.stock("runner-01", 8) == 3


def test_last_unit_goes_to_one_reservation(repo):
    first = repo.reserve(str(uuid.uuid4()), [("court-02", 9, 1)])
    second = repo.reserve(str(uuid.uuid4()), [("court-02", 9, 1)])

    assert first[0] is True
    assert second[0] is False
    assert repo.stock("court-02", 9) == 0


def test_concurrent_reservations_take_the_last_unit_once(tmp_path):
    # separate connections on a file database so the writers really contend
    engine = create_engine(
        f"sqlite:///{tmp_path / 'inventory.db'}", connect_args={"timeout": 30, "check_same_thread": False}
    )
    init_db(engine)
    repo = InventoryRepo(bind=engine)
    repo.upsert_product("court-02", "Court Classic", 75000, {9: 1})

    workers = 8
    barrier = threading.Barrier(workers)
    results, errors = [], []

    def buy():
        barrier.wait()
        try:
            results.append(repo.reserve(str(uuid.uuid4()), [("court-02", 9, 1)])[0])
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=buy) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sorted(results) == [False] * (workers - 1) + [True]
    assert repo.stock("court-02", 9) == 0
    engine.dispose()


def test_release_restores_stock_once(repo):
    rid = str(uuid.uuid4())
    repo.reserve(rid, [("runner-01", 8, 2), ("court-02", 10, 3)])

    assert repo.release(rid) is True
    assert repo.release(rid) is False
    assert repo.stock("runner-01", 8) == 5
    assert repo.stock("court-02", 10) == 3
    assert repo.reservation_status(rid) == "released"


def test_release_of_unknown_id_blocks_a_late_reserve(repo):
    rid = str(uuid.uuid4())

    assert repo.release(rid) is False
    ok, _ = repo.reserve(rid, [("runner-01", 8, 1)])

    assert ok is False
    assert repo.stock("runner-01", 8) == 5


def test_commit_makes_the_reservation_permanent(repo):
    rid = str(uuid.uuid4())
    repo.reserve(rid, [("runner-01", 8, 1)])

    assert repo.commit(rid) is True
    assert repo.commit(rid) is False
    assert repo.release(rid) is False
    assert repo.stock("runner-01", 8) == 4
    assert repo.reservation_status(rid) == "committed"


def test_upsert_product_updates_price_and_stock(repo):
    repo.upsert_product("runner-01", "Trail Runner v2", 160000, {9: 7, 11: 1})

    product = repo.get_product("runner-01")
    assert product["name"] == "Trail Runner v2"
    assert product["price_cents"] == 160000
    assert product["sizes"] == [{"size": 8, "stock": 5}, {"size": 9, "stock": 7}, {"size": 11, "stock": 1}]


def test_get_products_skips_unknown_ids(repo):
    products = repo.get_products(["court-02", "ghost-99"])
    assert [p["id"] for p in products] == ["court-02"]
    assert repo.get_products([]) == []
