from tests.conftest import auth_header


def register(client, **overrides):
    body = {"name": "Jane", "email": "jane@example.com", "password": "password123"}
    body.update(overrides)
    return client.post("/api/user/register", json=body)


def test_register_and_login(client):
    res = register(client)
    assert res.status_code == 200
    assert res.json()["success"] is True
    assert res.json()["token"]

    res = client.post("/api/user/login", json={"email": "jane@example.com", "password": "password123"})
    assert res.status_code == 200
    assert res.json()["token"]


def test_register_rejects_duplicates_and_short_passwords(client):
    register(client)
    assert register(client).status_code == 409
    assert register(client, email="other@example.com", password="short").status_code == 400
    assert register(client, email="not-an-email").status_code == 400


def test_login_failures(client):
    register(client)
    res = client.post("/api/user/login", json={"email": "jane@example.com", "password": "wrong-password"})
    assert res.status_code == 401
    res = client.post("/api/user/login", json={"email": "nobody@example.com", "password": "password123"})
    assert res.status_code == 401


def test_token_header_and_bearer_are_both_accepted(client, make_user):
    _, token = make_user()
    assert client.get("/api/cart", headers={"token": token}).status_code == 200
    assert client.get("/api/cart", headers={"Authorization": f"Bearer {token}"}).status_code == 200
    assert client.get("/api/cart").status_code == 401
    assert client.get("/api/cart", headers={"token": "garbage"}).status_code == 401


def test_admin_token_is_not_a_user_token(client, super_admin):
    _, headers = super_admin
    assert client.get("/api/cart", headers=headers).status_code == 401


def test_register_with_referral_code_counts_signup(client, db, make_affiliate):
    make_affiliate(code="ABC123")
    assert register(client, referral_code="abc123").status_code == 200
    assert db["affiliate"].find_one({})["stats"]["total_signups"] == 1
    # an unknown code never blocks registration
    assert register(client, email="x@example.com", referral_code="ZZZZZZ").status_code == 200


def test_favorites_toggle(client, user, make_product):
    _, headers = user
    product_id = make_product()
    res = client.post("/api/user/favorites/toggle", json={"product_id": product_id}, headers=headers)
    assert res.json()["favorite"] is True
    favorites = client.get("/api/user/favorites", headers=headers).json()["favorites"]
    assert [p["_id"] for p in favorites] == [product_id]

    res = client.post("/api/user/favorites/toggle", json={"product_id": product_id}, headers=headers)
    assert res.json()["favorite"] is False
    assert client.get("/api/user/favorites", headers=headers).json()["favorites"] == []


def test_profile_and_updates(client, user):
    _, headers = user
    client.put("/api/user/update-info", json={"name": "New Name", "phone": "670000000"}, headers=headers)
    client.put("/api/user/delivery-info", json={"first_name": "New", "city": "Douala"}, headers=headers)

    profile = client.get("/api/user/profile", headers=headers).json()
    assert profile["user"]["name"] == "New Name"
    assert profile["user"]["phone"] == "670000000"
    assert profile["delivery_info"]["city"] == "Douala"
    assert profile["stats"]["total_orders"] == 0
    assert profile["stats"]["average_order_value"] == 0


def test_change_password(client, make_user):
    user_id, token = make_user(password="password123")
    headers = auth_header(token)
    res = client.put("/api/user/change-password",
                     json={"current_password": "nope", "new_password": "newpassword"}, headers=headers)
    assert res.status_code == 400

    res = client.put("/api/user/change-password",
                     json={"current_password": "password123", "new_password": "newpassword"}, headers=headers)
    assert res.status_code == 200
    res = client.post("/api/user/login", json={"email": "buyer@example.com", "password": "newpassword"})
    assert res.status_code == 200


def test_login_is_rate_limited(client, monkeypatch):
    import main
    monkeypatch.setattr(main, "RATE_LIMIT_MAX_ATTEMPTS", 2)
    body = {"email": "jane@example.com", "password": "password123"}
    client.post("/api/user/login", json=body)
    client.post("/api/user/login", json=body)
    assert client.post("/api/user/login", json=body).status_code == 429
