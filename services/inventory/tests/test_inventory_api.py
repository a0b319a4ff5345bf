import uuid


def test_health(api):
    assert api.get("/health").json() == {"ok": True}


def test_list_products_by_ids(api):
    r = api.get("/products", params=[("ids", "runner-01"), ("ids", "ghost-99")])

    assert r.status_code == 200
    body = r.json()
    assert len(body) == 1
    assert body[0]["id"] == "runner-01"
    assert body[0]["price_cents"] == 150000
    assert body[0]["sizes"] == [{"size": 8, "stock": 5}, {"size": 9, "stock": 2}]


def test_get_unknown_product(api):
    r = api.get("/products/ghost-99")
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


def test_reserve_then_release(api, repo):
    rid = str(uuid.uuid4())
    r = api.post("/reserve", json={"reservation_id": rid, "items": [{"product_id": "court-02", "size": 10, "quantity": 2}]})

    assert r.status_code == 200
    assert r.json() == {"reserved": True, "shortages": []}
    assert repo.stock("court-02", 10) == 1

    assert api.post(f"/reservations/{rid}/release").json() == {"released": True}
    assert api.post(f"/reservations/{rid}/release").json() == {"released": False}
    assert repo.stock("court-02", 10) == 3


def test_reserve_shortage_is_422_with_every_line(api, repo):
    r = api.post(
        "/reserve",
        json={
            "reservation_id": str(uuid.uuid4()),
            "items": [
                {"product_id": "runner-01", "size": 9, "quantity": 3},
                {"product_id": "court-02", "size": 10, "quantity": 1},
                {"product_id": "court-02", "size": 9, "quantity": 2},
            ],
        },
    )

    assert r.status_code == 422
    body = r.json()
    assert body["reserved"] is False
    assert body["detail"] == "INSUFFICIENT_STOCK"
    assert {(s["product_id"], s["size"]) for s in body["shortages"]} == {("runner-01", 9), ("court-02", 9)}
    assert repo.stock("court-02", 10) == 3


def test_commit_endpoint(api):
    rid = str(uuid.uuid4())
    api.post("/reserve", json={"reservation_id": rid, "items": [{"product_id": "runner-01", "size": 8, "quantity": 1}]})

    assert api.post(f"/reservations/{rid}/commit").json() == {"committed": True}
    assert api.post(f"/reservations/{rid}/release").json() == {"released": False}


def test_reserve_rejects_invalid_body(api):
    r = api.post("/reserve", json={"reservation_id": "not-a-uuid", "items": []})
    assert r.status_code == 422
    assert "detail" in r.json()


def test_request_id_is_echoed(api):
    r = api.get("/health", headers={"X-Request-ID": "rid-42"})
    assert r.headers["X-Request-ID"] == "rid-42"
