from bson import ObjectId


def test_create_requires_admin(client, customer):
    res = client.post("/api/products", json={"name": "Mocha", "price": 140, "description": "Chocolate"},
                      headers=customer["headers"])
    assert res.status_code == 403
    assert res.json() == {"success": False, "message": "Admin access required"}


def test_create_defaults(client, latte):
    assert latte["isAvailable"] is True
    assert latte["isArchived"] is False
    assert latte["stock"] == 0


def test_create_validates(client, admin):
    res = client.post("/api/products", json={"name": "Mocha", "price": -1, "description": "x"},
                      headers=admin["headers"])
    assert res.status_code == 400


def test_list_filters(client, latte, croissant):
    names = [p["name"] for p in client.get("/api/products").json()["data"]]
    assert sorted(names) == ["Croissant", "Latte"]

    pastry = client.get("/api/products?category=Pastry").json()["data"]
    assert [p["name"] for p in pastry] == ["Croissant"]

    found = client.get("/api/products?search=steamed").json()["data"]
    assert [p["name"] for p in found] == ["Latte"]


def test_search_is_literal(client, admin, latte):
    client.post("/api/products", json={"name": "Espresso (double)", "price": 110, "description": "Two shots"},
                headers=admin["headers"])

    res = client.get("/api/products", params={"search": "("})
    assert res.status_code == 200
    assert [p["name"] for p in res.json()["data"]] == ["Espresso (double)"]

    res = client.get("/api/products", params={"search": "c++"})
    assert res.status_code == 200
    assert res.json()["data"] == []


def test_archive_and_restore(client, admin, latte):
    res = client.patch(f"/api/products/{latte['id']}/archive", headers=admin["headers"])
    archived = res.json()["data"]
    assert archived["isArchived"] is True
    assert archived["isAvailable"] is False
    assert archived["archivedAt"] is not None

    assert client.get("/api/products").json()["data"] == []
    assert len(client.get("/api/products?includeArchived=true").json()["data"]) == 1
    assert [p["id"] for p in client.get("/api/products/archived/all").json()["data"]] == [latte["id"]]

    restored = client.patch(f"/api/products/{latte['id']}/unarchive", headers=admin["headers"]).json()["data"]
    assert restored["isArchived"] is False
    assert restored["archivedAt"] is None
    assert restored["isAvailable"] is True


def test_update(client, admin, latte):
    res = client.put(f"/api/products/{latte['id']}", json={"price": 130, "stock": 12}, headers=admin["headers"])
    assert res.json()["data"]["price"] == 130
    assert res.json()["data"]["stock"] == 12

    empty = client.put(f"/api/products/{latte['id']}", json={}, headers=admin["headers"])
    assert empty.status_code == 400


def test_hard_delete(client, admin, latte):
    res = client.delete(f"/api/products/{latte['id']}", headers=admin["headers"])
    assert res.json() == {"success": True, "message": "Product deleted permanently"}
    assert client.get(f"/api/products/{latte['id']}").status_code == 404
    assert client.delete(f"/api/products/{latte['id']}", headers=admin["headers"]).status_code == 404


def test_unknown_product(client):
    assert client.get(f"/api/products/{ObjectId()}").status_code == 404
    assert client.get("/api/products/not-an-id").json()["message"] == "Product not found"


def test_orders_do_not_touch_stock(client, admin, customer, latte):
    client.put(f"/api/products/{latte['id']}", json={"stock": 3}, headers=admin["headers"])
    client.post("/api/orders/create", json={
        "items": [{"productId": latte["id"], "name": "Latte", "price": 120.0, "quantity": 5}],
        "totalPrice": 600.0,
        "customerInfo": {"name": "Ana Cruz"},
    }, headers=customer["headers"])
    assert client.get(f"/api/products/{latte['id']}").json()["data"]["stock"] == 3
