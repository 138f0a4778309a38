from datetime import datetime

from bson import ObjectId


def create(client, headers, **overrides):
    body = {"username": "helper", "email": "Helper@Example.com", "password": "secret1", "role": "assistant_admin"}
    body.update(overrides)
    return client.post("/api/admin-auth/create", json=body, headers=headers)


def test_admin_login(client, make_admin):
    make_admin("super_admin", email="boss@example.com", password="adminpass")
    res = client.post("/api/admin-auth/login", json={"email": "BOSS@example.com", "password": "adminpass"})
    assert res.status_code == 200
    body = res.json()
    assert body["admin"]["role"] == "super_admin"
    assert body["admin"]["permissions"]["admin_management"] is True
    assert body["admin"]["last_login"] is not None

    res = client.post("/api/admin-auth/login", json={"email": "boss@example.com", "password": "wrong"})
    assert res.status_code == 401


def test_super_admin_creates_assistant(client, super_admin, db):
    _, headers = super_admin
    res = create(client, headers)
    assert res.status_code == 200
    admin = res.json()["admin"]
    assert admin["email"] == "helper@example.com"
    assert admin["permissions"]["affiliates"] is False
    assert admin["permissions"]["orders"] is True

    assert create(client, headers).status_code == 409
    assert create(client, headers, username="other", email="o@example.com", password="123").status_code == 400
    assert create(client, headers, username="bad", email="b@example.com", role="owner").status_code == 400


def test_assistant_cannot_manage_admins(client, assistant):
    _, headers = assistant
    assert create(client, headers).status_code == 403
    assert client.get("/api/admin-auth/all", headers=headers).status_code == 403


def test_role_change_resets_permissions(client, super_admin):
    _, headers = super_admin
    admin_id = create(client, headers).json()["admin"]["id"]
    res = client.put(f"/api/admin-auth/{admin_id}", json={"role": "super_admin"}, headers=headers)
    assert res.json()["admin"]["permissions"]["affiliates"] is True

    res = client.put(f"/api/admin-auth/{admin_id}", json={"role": "assistant_admin"}, headers=headers)
    assert res.json()["admin"]["permissions"]["affiliates"] is False


def test_soft_delete(client, super_admin, db):
    own_id, headers = super_admin
    admin_id = create(client, headers).json()["admin"]["id"]

    assert client.delete(f"/api/admin-auth/{own_id}", headers=headers).status_code == 400
    assert client.delete(f"/api/admin-auth/{admin_id}", headers=headers).status_code == 200
    assert db["admin"].count_documents({"username": "helper"}) == 1

    listed = client.get("/api/admin-auth/all", headers=headers).json()["admins"]
    assert [a["username"] for a in listed] == ["super_admin"]
    assert all("password_hash" not in a for a in listed)

    res = client.post("/api/admin-auth/login", json={"email": "helper@example.com", "password": "secret1"})
    assert res.status_code == 401


def test_permission_is_read_from_stored_admin(client, assistant, db):
    admin_id, headers = assistant
    assert client.get("/api/affiliate/admin/all", headers=headers).status_code == 403
    db["admin"].update_one({"username": "assistant_admin"}, {"$set": {"permissions.affiliates": True}})
    assert client.get("/api/affiliate/admin/all", headers=headers).status_code == 200


def test_dashboard(client, assistant, db, make_product):
    _, headers = assistant
    make_product()
    res = client.get("/api/admin/dashboard", headers=headers)
    assert res.status_code == 200
    assert res.json()["stats"]["total_products"] == 1
    assert res.json()["stats"]["total_revenue"] == 0


def test_user_management(client, super_admin, make_user, db):
    _, headers = super_admin
    buyer_id, _ = make_user(email="a@example.com", name="Ann")
    make_user(email="b@example.com", name="Ben")
    db["order"].insert_many([
        {"user_id": buyer_id, "amount": 12000, "payment": True, "date": datetime(2024, 3, 1)},
        {"user_id": buyer_id, "amount": 8000, "payment": True, "date": datetime(2024, 5, 1)},
        {"user_id": buyer_id, "amount": 5000, "payment": False, "date": datetime(2024, 6, 1)},
    ])

    users = client.get("/api/admin/users", headers=headers).json()["users"]
    assert sorted(u["email"] for u in users) == ["a@example.com", "b@example.com"]
    assert all("password_hash" not in u and "cart_data" not in u for u in users)

    stats = client.get(f"/api/admin/users/{buyer_id}/stats", headers=headers).json()["stats"]
    assert stats["total_orders"] == 3
    assert stats["total_spent"] == 20000
    assert stats["last_order_date"].startswith("2024-05-01")

    assert client.delete(f"/api/admin/users/{buyer_id}", headers=headers).status_code == 200
    assert db["user"].count_documents({}) == 1
    assert db["order"].count_documents({"user_id": buyer_id}) == 0
    assert client.delete(f"/api/admin/users/{buyer_id}", headers=headers).status_code == 404
    assert client.get(f"/api/admin/users/{ObjectId()}/stats", headers=headers).status_code == 404


def test_user_management_requires_users_permission(client, assistant, user):
    _, headers = assistant
    user_id, _ = user
    assert client.get("/api/admin/users", headers=headers).status_code == 403
    assert client.get(f"/api/admin/users/{user_id}/stats", headers=headers).status_code == 403
    assert client.delete(f"/api/admin/users/{user_id}", headers=headers).status_code == 403
