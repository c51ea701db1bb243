from fastapi.testclient import TestClient

import lifecycle
import main


def _register(client, email="carla@mail.com", password="s3cret-pw"):
    return client.post("/api/auth/register", json={"name": "Carla", "email": email, "password": password})


def test_register_and_login(client, mongo):
    res = _register(client)
    assert res.status_code == 201
    assert res.json()["data"]["user"]["role"] == "customer"

    res = client.post("/api/auth/login", json={"email": "carla@mail.com", "password": "s3cret-pw"},
                      headers={"User-Agent": "Mozilla/5.0 (Windows NT 10.0) Chrome/120.0"})
    assert res.status_code == 200
    token = res.json()["data"]["token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"}).json()["data"]
    assert me["email"] == "carla@mail.com"
    assert "password_hash" not in me

    log = mongo["loginlog"].find_one({"status": "success"})
    assert log["email"] == "carla@mail.com"
    assert log["role"] == "customer"
    assert log["device"] == "Chrome on Windows"


def test_duplicate_registration(client):
    _register(client)
    res = _register(client)
    assert res.status_code == 400
    assert res.json()["message"] == "Email already registered"


def test_failed_logins_are_audited(client, mongo):
    _register(client)
    res = client.post("/api/auth/login", json={"email": "carla@mail.com", "password": "wrong-pw"})
    assert res.status_code == 400
    client.post("/api/auth/login", json={"email": "nobody@mail.com", "password": "whatever"})

    reasons = sorted(log["failureReason"] for log in mongo["loginlog"].find({"status": "failed"}))
    assert reasons == ["Invalid password", "User not found"]


def test_bad_tokens(client):
    assert client.get("/api/cart", headers={"Authorization": "Bearer nonsense"}).status_code == 401
    assert client.get("/api/cart", headers={"Authorization": "Token abc"}).status_code == 401


def test_staff_and_owner_count_as_admin(client, mongo):
    from tests.conftest import make_user

    for role in ("staff", "owner"):
        user = make_user(mongo, role.title(), f"{role}@mail.com", role=role)
        assert client.get("/api/orders/admin/all", headers=user["headers"]).status_code == 200


def test_admin_stats_and_customers(client, admin, customer, latte):
    client.post("/api/orders/create", json={
        "items": [{"productId": latte["id"], "name": "Latte", "price": 120.0, "quantity": 2}],
        "totalPrice": 240.0,
        "customerInfo": {"name": "Ana Cruz"},
    }, headers=customer["headers"])
    order = client.get("/api/orders/my-orders", headers=customer["headers"]).json()["data"][0]
    client.patch(f"/api/orders/{order['id']}/status", json={"status": "completed"}, headers=admin["headers"])

    stats = client.get("/api/admin/stats", headers=admin["headers"]).json()["data"]
    assert stats["totalUsers"] == 1
    assert stats["totalOrders"] == 1
    assert stats["pendingOrders"] == 0
    assert stats["totalRevenue"] == 240.0

    body = client.get("/api/users/customers", headers=admin["headers"]).json()
    assert body["count"] == 1
    assert body["data"][0]["orderCount"] == 1
    assert "cart" not in body["data"][0]


def test_unexpected_errors_are_redacted(mongo, customer, latte, monkeypatch):
    def boom():
        raise RuntimeError("connection string mongodb://secret")

    monkeypatch.setattr(lifecycle, "generate_order_id", boom)
    client = TestClient(main.app, raise_server_exceptions=False)
    res = client.post("/api/orders/create", json={
        "items": [{"productId": latte["id"], "name": "Latte", "price": 120.0}],
        "totalPrice": 120.0,
        "customerInfo": {},
    }, headers=customer["headers"])
    assert res.status_code == 500
    assert res.json() == {"success": False, "error": "Internal server error"}


def test_error_details_can_be_exposed(mongo, customer, latte, monkeypatch):
    def boom():
        raise RuntimeError("order id generator down")

    monkeypatch.setattr(lifecycle, "generate_order_id", boom)
    monkeypatch.setattr(main, "EXPOSE_ERROR_DETAILS", True)
    client = TestClient(main.app, raise_server_exceptions=False)
    res = client.post("/api/orders/create", json={
        "items": [{"productId": latte["id"], "name": "Latte", "price": 120.0}],
        "totalPrice": 120.0,
        "customerInfo": {},
    }, headers=customer["headers"])
    assert res.status_code == 500
    assert res.json() == {"success": False, "error": "order id generator down"}


def test_customer_detail(client, admin, customer, other_customer, latte):
    for total in (120.0, 240.0):
        client.post("/api/orders/create", json={
            "items": [{"productId": latte["id"], "name": "Latte", "price": 120.0, "quantity": int(total // 120)}],
            "totalPrice": total,
            "customerInfo": {"name": "Ana Cruz"},
        }, headers=customer["headers"])
    first = client.get("/api/orders/my-orders", headers=customer["headers"]).json()["data"][-1]
    client.patch(f"/api/orders/{first['id']}/status", json={"status": "completed"}, headers=admin["headers"])
    client.post("/api/reservations/create", json={
        "customerInfo": {"name": "Ana Cruz", "email": "ana@mail.com", "phone": "0917 555 0101"},
        "date": "2030-05-01",
        "time": "18:30",
        "guests": 2,
    }, headers=customer["headers"])

    res = client.get(f"/api/users/customers/{customer['id']}", headers=admin["headers"])
    assert res.status_code == 200
    detail = res.json()["data"]
    assert detail["customer"]["email"] == "ana@mail.com"
    assert "cart" not in detail["customer"]
    assert len(detail["orders"]) == 2
    assert len(detail["reservations"]) == 1
    stats = detail["statistics"]
    assert stats["totalOrders"] == 2
    assert stats["completedOrders"] == 1
    assert stats["pendingOrders"] == 1
    assert stats["confirmedReservations"] == 1
    assert stats["totalSpent"] == first["totalPrice"]

    other = client.get(f"/api/users/customers/{other_customer['id']}", headers=admin["headers"]).json()["data"]
    assert other["orders"] == []
    assert other["statistics"]["totalSpent"] == 0


def test_customer_detail_not_found(client, admin, customer):
    for customer_id in ("not-an-id", admin["id"]):
        res = client.get(f"/api/users/customers/{customer_id}", headers=admin["headers"])
        assert res.status_code == 404
        assert res.json()["message"] == "Customer not found"
    assert client.get(f"/api/users/customers/{admin['id']}", headers=customer["headers"]).status_code == 403


def test_startup_creates_indexes(mongo):
    with TestClient(main.app):
        pass
    assert mongo["order"].index_information()["orderId_1"]["unique"] is True
    assert mongo["user"].index_information()["email_1"]["unique"] is True


def test_health_endpoints(client, latte):
    assert client.get("/").json() == {"message": "Eris Café API is running"}
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["database"] == "connected"
    assert "product" in health["collections"]


def test_health_without_database(monkeypatch):
    monkeypatch.setattr(main, "db", None)
    health = TestClient(main.app).get("/health").json()
    assert health == {"status": "ok", "database": "not configured", "collections": []}


def test_schema_lists_every_collection(client):
    assert set(client.get("/schema").json()) == {
        "user", "product", "order", "reservation", "loginlog", "notification", "feedback",
    }
