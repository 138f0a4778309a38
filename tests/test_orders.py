import pytest
from bson import ObjectId

import payments
from payments import CollectResult, PaymentError

ADDRESS = {"first_name": "Jane", "last_name": "Doe", "email": "jane@example.com",
           "street": "1 Rue Joss", "city": "Douala", "country": "Cameroon"}


class FakeGateway:
    def __init__(self, result=None, error=None):
        self.result = result or CollectResult(success=True, transaction_id="tx-1", reference="ref-1")
        self.error = error
        self.calls = []

    def collect(self, amount, service, payer, customer, line_items):
        self.calls.append({"amount": amount, "service": service, "payer": payer,
                           "customer": customer, "line_items": line_items})
        if self.error:
            raise self.error
        return self.result

    def status(self, transaction_id):
        return {"found": True, "status": "SUCCESS"}


@pytest.fixture
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(payments, "gateway", fake)
    return fake


def fill_cart(client, headers, product_id, times=2, size="M", color="#000000"):
    for _ in range(times):
        res = client.post("/api/cart/add", json={"item_id": product_id, "size": size, "color": color}, headers=headers)
        assert res.status_code == 200


def test_cart_add_update_and_stock_limit(client, user, make_product):
    _, headers = user
    product_id = make_product()
    fill_cart(client, headers, product_id, times=2, color="#ffffff")
    res = client.post("/api/cart/add", json={"item_id": product_id, "size": "M", "color": "#ffffff"}, headers=headers)
    assert res.status_code == 409

    res = client.post("/api/cart/update", json={"item_id": product_id, "size": "M", "color": "#ffffff", "quantity": 1},
                      headers=headers)
    assert res.json()["cart_data"] == {product_id: {"M-#ffffff": 1}}
    res = client.post("/api/cart/update", json={"item_id": product_id, "size": "M", "color": "#ffffff", "quantity": 0},
                      headers=headers)
    assert res.json()["cart_data"] == {}


def test_cart_validate_reports_adjustments(client, db, user, make_product):
    user_id, headers = user
    product_id = make_product()
    db["user"].update_one({"_id": ObjectId(user_id)},
                          {"$set": {"cart_data": {product_id: {"M-#000000": 9}, str(ObjectId()): {"M": 1}}}})
    body = client.get("/api/cart/validate", headers=headers).json()
    assert body["valid"] is False
    assert body["cart_data"] == {product_id: {"M-#000000": 5}}
    assert {a["reason"] for a in body["adjustments"]} == {"insufficient_stock", "product_removed"}
    assert client.get("/api/cart", headers=headers).json()["cart_data"] == {product_id: {"M-#000000": 5}}


def test_shipping_options(client):
    options = client.get("/api/order/shipping-options").json()["options"]
    assert {"country": "china", "method": "air", "rate_per_kg": 9000, "transit_time": "14 days"} in options


def test_place_cod_order(client, db, user, make_product):
    user_id, headers = user
    product_id = make_product()
    fill_cart(client, headers, product_id, times=2)

    res = client.post("/api/order/place", json={"address": ADDRESS, "shipping": {"method": "sea", "country": "china"}},
                      headers=headers)
    assert res.status_code == 200
    # 2 x 10000 plus 1kg by sea
    assert res.json()["amount"] == 21000

    order = db["order"].find_one({"user_id": user_id})
    assert order["payment_method"] == "COD"
    assert order["payment"] is False
    assert order["status"] == "Order Placed"
    assert order["shipping"] == {"method": "sea", "cost": 1000, "weight": 1.0, "country": "china"}
    assert order["items"][0]["color"] == "#000000"
    assert client.get("/api/cart", headers=headers).json()["cart_data"] == {}

    orders = client.post("/api/order/userorders", headers=headers).json()["orders"]
    assert len(orders) == 1


def test_place_order_errors(client, user, make_product):
    _, headers = user
    res = client.post("/api/order/place", json={"address": ADDRESS}, headers=headers)
    assert res.status_code == 400

    fill_cart(client, headers, make_product(), times=1)
    res = client.post("/api/order/place", json={"address": ADDRESS, "shipping": {"method": "air", "country": "nigeria"}},
                      headers=headers)
    assert res.status_code == 400


def test_admin_order_list_and_status(client, user, assistant, make_product):
    _, headers = user
    _, admin_headers = assistant
    fill_cart(client, headers, make_product(), times=1)
    order_id = client.post("/api/order/place", json={"address": ADDRESS}, headers=headers).json()["order_id"]

    assert len(client.get("/api/order/list", headers=admin_headers).json()["orders"]) == 1
    res = client.post("/api/order/status", json={"order_id": order_id, "status": "Shipped to Douala"},
                      headers=admin_headers)
    assert res.status_code == 200
    orders = client.post("/api/order/userorders", headers=headers).json()["orders"]
    assert orders[0]["status"] == "Shipped to Douala"

    res = client.post("/api/order/status", json={"order_id": str(ObjectId()), "status": "Delivered"},
                      headers=admin_headers)
    assert res.status_code == 404


def test_mobile_payment_creates_paid_order(client, db, user, make_product, gateway):
    user_id, headers = user
    fill_cart(client, headers, make_product(), times=1)
    res = client.post("/api/mesomb/payment/mobile",
                      json={"phone_number": "670000000", "service": "mtn", "address": ADDRESS}, headers=headers)
    assert res.status_code == 200
    assert res.json()["transaction_id"] == "tx-1"

    call = gateway.calls[0]
    assert call["payer"] == "237670000000"
    assert call["service"] == "MTN"
    assert call["amount"] == 10500
    assert call["line_items"] == [
        {"quantity": 1, "unit_amount": 10000, "currency": "XAF", "product_data": {"name": "Linen Shirt"}}]
    assert call["customer"]["phone"] == "237670000000"

    order = db["order"].find_one({"user_id": user_id})
    assert order["payment"] is True
    assert order["payment_method"] == "Mobile Money"
    assert order["payment_details"]["mesomb_reference"] == "ref-1"
    assert client.get("/api/cart", headers=headers).json()["cart_data"] == {}

    verify = client.get("/api/mesomb/payment/verify/tx-1", headers=headers).json()
    assert verify["order"]["payment_status"] == "Paid"


def test_failed_payment_keeps_cart(client, db, user, make_product, monkeypatch):
    _, headers = user
    monkeypatch.setattr(payments, "gateway", FakeGateway(result=CollectResult(success=False, message="Insufficient")))
    fill_cart(client, headers, make_product(), times=1)
    res = client.post("/api/mesomb/payment/mobile",
                      json={"phone_number": "670000000", "service": "ORANGE", "address": ADDRESS}, headers=headers)
    assert res.status_code == 402
    assert res.json()["detail"]["error_type"] == "payment_failed"
    assert db["order"].count_documents({}) == 0
    assert client.get("/api/cart", headers=headers).json()["cart_data"] != {}


@pytest.mark.parametrize("error,status", [
    (PaymentError("not configured", "configuration"), 503),
    (PaymentError("unreachable", "gateway_error"), 502),
])
def test_gateway_errors(client, user, make_product, monkeypatch, error, status):
    _, headers = user
    monkeypatch.setattr(payments, "gateway", FakeGateway(error=error))
    fill_cart(client, headers, make_product(), times=1)
    res = client.post("/api/mesomb/payment/mobile",
                      json={"phone_number": "670000000", "service": "MTN", "address": ADDRESS}, headers=headers)
    assert res.status_code == status
    assert res.json()["detail"]["error_type"] == error.error_type


def test_unsupported_service(client, user, gateway):
    _, headers = user
    res = client.post("/api/mesomb/payment/mobile",
                      json={"phone_number": "670000000", "service": "PAYPAL", "address": ADDRESS}, headers=headers)
    assert res.status_code == 400
    assert gateway.calls == []


def test_paid_order_credits_referring_affiliate(client, db, make_affiliate, make_product, gateway):
    make_affiliate(code="ABC123")
    token = client.post("/api/user/register", json={"name": "Jane", "email": "jane@example.com",
                                                    "password": "password123", "referral_code": "ABC123"}).json()["token"]
    headers = {"token": token}
    fill_cart(client, headers, make_product(), times=1)
    client.post("/api/mesomb/payment/mobile",
                json={"phone_number": "670000000", "service": "MTN", "address": ADDRESS}, headers=headers)

    affiliate = db["affiliate"].find_one({})
    assert affiliate["stats"]["total_sales"] == 1
    assert affiliate["stats"]["total_earnings"] == pytest.approx(10500 * 0.05)
    purchase = db["referral"].find_one({"type": "purchase"})
    assert purchase["amount"] == 10500
