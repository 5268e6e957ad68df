def _setup_floor(client):
    cart = client.post("/pick/carts", json={"name": "Cart-1", "color": "blue"}).json()
    cell = client.post("/pick/cells", json={"name": "Cell-A"}).json()
    return cart, cell


def _ingest_and_release(client, cell, orders):
    client.post("/orders/ingest", json={"orders": orders})
    created = client.post("/batches", json={
        "orderNumbers": [o["orderNumber"] for o in orders], "type": "ORDER_BY_SIZE", "cellIds": [cell["id"]],
    })
    assert created.status_code == 200, created.text
    batch_id = created.json()["batches"][0]["id"]
    assert client.post(f"/batches/{batch_id}/release").json()["status"] == "RELEASED"
    return batch_id


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_claim_and_complete_over_http(client):
    cart, cell = _setup_floor(client)
    client.put("/pick/locations", json=[{"sku": "MUG", "binLocation": "B-02"}, {"sku": "cap", "binLocation": "A-01"}])
    _ingest_and_release(client, cell, [
        {"orderNumber": "1001", "items": [{"sku": "MUG", "quantity": 2}]},
        {"orderNumber": "1002", "items": [{"sku": "CAP", "quantity": 2}]},
    ])
    assert [c["name"] for c in client.get("/pick/carts/available").json()] == ["Cart-1"]

    resp = client.post("/pick/actions", json={
        "action": "claim-chunk", "cartId": cart["id"], "pickerName": "dana", "cellId": cell["id"],
    })

    assert resp.status_code == 200, resp.text
    detail = resp.json()
    chunk_id = detail["chunk"]["id"]
    assert [(b["bin_number"], b["orders"][0]["order_number"]) for b in detail["bins"]] == [(1, "1002"), (2, "1001")]
    assert client.get("/pick/carts/available").json() == []

    state = client.get(f"/pick/cells/{cell['id']}/state").json()
    assert [c["id"] for c in state["active_chunks"]] == [chunk_id]

    done = client.post("/pick/actions", json={"action": "complete-chunk", "chunkId": chunk_id})
    assert done.json()["chunk"]["status"] == "PICKED"


def test_errors_have_a_uniform_body(client):
    cart, cell = _setup_floor(client)

    missing = client.post("/pick/actions", json={"action": "claim-chunk", "pickerName": "dana", "cellId": cell["id"]})
    assert missing.status_code == 400
    assert missing.json()["error"]["code"] == "validation_failed"

    empty = client.post("/pick/actions", json={
        "action": "claim-chunk", "cartId": cart["id"], "pickerName": "dana", "cellId": cell["id"],
    })
    assert empty.status_code == 409
    assert empty.json()["error"]["code"] == "no_orders_available"

    unknown = client.post("/pick/actions", json={"action": "teleport"})
    assert unknown.status_code == 400

    assert client.get("/pick/chunks/nope").status_code == 404


def test_duplicate_cart_name_conflicts(client):
    _setup_floor(client)
    resp = client.post("/pick/carts", json={"name": "Cart-1"})
    assert resp.status_code == 409


def test_stock_out_and_release_cart(client):
    cart, cell = _setup_floor(client)
    _ingest_and_release(client, cell, [
        {"orderNumber": f"100{i}", "items": [{"sku": f"SKU{i}", "quantity": 2}]} for i in range(1, 4)
    ])
    chunk_id = client.post("/pick/actions", json={
        "action": "claim-chunk", "cartId": cart["id"], "pickerName": "dana", "cellId": cell["id"],
    }).json()["chunk"]["id"]

    oos = client.post("/pick/actions", json={
        "action": "out-of-stock", "chunkId": chunk_id, "sku": "SKU2", "affectedBinNumbers": [2],
    }).json()
    assert oos == {"orders_returned": 1, "affected_order_numbers": ["1002"]}

    released = client.post(f"/pick/carts/{cart['id']}/release", json={"reason": "end of shift"}).json()
    assert released == {"cart_id": cart["id"], "chunks_cancelled": 1, "orders_returned": 2}
    assert client.get(f"/pick/chunks/{chunk_id}").json()["chunk"]["cancel_reason"] == "end of shift"


def test_personalized_flow_over_http(client):
    cart, cell = _setup_floor(client)
    client.post("/orders/ingest", json=[{"orderNumber": "7001", "isPersonalized": True,
                                         "items": [{"sku": "PEN", "quantity": 2}]}])
    assert client.get("/pick/personalized/backlog").json()["orders_not_batched"] == 1
    auto = client.post("/batches/auto", json={"cellIds": [cell["id"]], "release": True}).json()
    assert [b["is_personalized"] for b in auto["batches"]] == [True]

    chunk_id = client.post("/pick/actions", json={
        "action": "claim-chunk", "cartId": cart["id"], "pickerName": "dana", "personalized": True,
    }).json()["chunk"]["id"]
    client.post("/pick/actions", json={"action": "complete-chunk", "chunkId": chunk_id})
    assert client.get("/pick/personalized/backlog").json()["chunks_awaiting_engraving"] == 1

    started = client.post("/pick/actions", json={"action": "start-engraving", "chunkId": chunk_id, "engraverName": "sam"})
    assert started.json()["total_items"] == 2
    client.post("/pick/actions", json={"action": "mark-engraved", "chunkId": chunk_id, "binNumber": 1})
    done = client.post("/pick/actions", json={"action": "complete-engraving", "chunkId": chunk_id})
    assert done.json()["chunk"]["status"] == "READY_FOR_SHIPPING"
