from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

import database
import main
from payments import PaymentError


def future(days=2):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


@pytest.fixture
def order_payload(catalog, address):
    return {
        "items": [
            {"product_id": catalog["truffle"], "name": "Chocolate Truffle", "weight": "1 kg", "quantity": 2},
            {"product_id": catalog["brownie"], "name": "Walnut Brownie", "quantity": 3, "is_eggless": True},
        ],
        "address_id": address,
        "payment_method": "Cash on Delivery",
        "delivery_date": future(),
        "delivery_time": "4 PM - 6 PM",
    }


@pytest.fixture
def placed_order(client, customer, order_payload):
    res = client.post("/api/orders", json=order_payload, headers=customer["headers"])
    assert res.status_code == 201, res.text
    return res.json()


def test_cash_on_delivery_order(client, mongo, customer, order_payload, catalog):
    res = client.post("/api/orders", json=order_payload, headers=customer["headers"])

    assert res.status_code == 201
    order = res.json()
    assert order["subtotal"] == 1240
    assert order["total"] == order["subtotal"] - order["discount"] + order["delivery_charge"]
    assert order["commission"] == pytest.approx(order["total"] * 0.10)
    assert order["order_status"] == "Pending"
    assert order["payment_status"] == "Pending"
    assert order["user_id"] == customer["id"]
    assert [i["price"] for i in order["items"]] == [500, 80]

    truffle = mongo["product"].find_one({"_id": ObjectId(catalog["truffle"])})
    assert truffle["order_count"] == 2


def test_order_items_are_snapshots(client, mongo, customer, placed_order, catalog):
    mongo["product"].update_one(
        {"_id": ObjectId(catalog["truffle"])},
        {"$set": {"name": "Dark Truffle", "weight_options": [{"weight": "1 kg", "price": 900}]}},
    )

    order = client.get(f"/api/orders/{placed_order['id']}", headers=customer["headers"]).json()

    assert order["items"][0]["name"] == "Chocolate Truffle"
    assert order["items"][0]["price"] == 500
    assert order["total"] == placed_order["total"]


def test_order_with_coupon_counts_usage(client, mongo, customer, order_payload, make_coupon):
    make_coupon("SWEET10", max_discount=100)

    res = client.post("/api/orders", json={**order_payload, "coupon_code": "sweet10"}, headers=customer["headers"])

    order = res.json()
    assert order["discount"] == 100
    assert order["coupon_code"] == "SWEET10"
    assert order["total"] == 1140
    assert mongo["coupon"].find_one({"code": "SWEET10"})["used_count"] == 1


def test_exhausted_coupon_rejects_order(client, mongo, customer, order_payload, make_coupon):
    make_coupon("ONCE", usage_limit=1, used_count=1)

    res = client.post("/api/orders", json={**order_payload, "coupon_code": "ONCE"}, headers=customer["headers"])

    assert res.status_code == 400
    assert res.json()["detail"] == "Coupon usage limit reached"
    assert mongo["order"].count_documents({}) == 0


def test_unknown_coupon_rejects_order_with_400(client, mongo, customer, order_payload):
    res = client.post("/api/orders", json={**order_payload, "coupon_code": "NOPE"}, headers=customer["headers"])

    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid coupon code"
    assert mongo["order"].count_documents({}) == 0


def test_inactive_product_rejects_order(client, customer, order_payload, catalog):
    order_payload["items"].append({"product_id": catalog["retired"], "quantity": 1})
    res = client.post("/api/orders", json=order_payload, headers=customer["headers"])
    assert res.status_code == 400


def test_unserviceable_pincode(client, mongo, customer, order_payload):
    mongo["deliverypincode"].update_many({}, {"$set": {"is_active": False}})

    res = client.post("/api/orders", json=order_payload, headers=customer["headers"])

    assert res.status_code == 400
    assert res.json()["detail"] == "Delivery not available for this pincode"


def test_someone_elses_address(client, make_user, order_payload):
    other = make_user("customer", email="other@bakehub.in")
    res = client.post("/api/orders", json=order_payload, headers=other["headers"])
    assert res.status_code == 404


def test_past_delivery_date(client, customer, order_payload):
    res = client.post("/api/orders", json={**order_payload, "delivery_date": future(-3)}, headers=customer["headers"])
    assert res.status_code == 400


def test_empty_cart_is_400(client, customer, order_payload):
    res = client.post("/api/orders", json={**order_payload, "items": []}, headers=customer["headers"])
    assert res.status_code == 400


def test_only_customers_place_orders(client, admin, order_payload):
    assert client.post("/api/orders", json=order_payload, headers=admin["headers"]).status_code == 403


@pytest.fixture
def gateway(monkeypatch):
    """Razorpay stand-in: orders by id as {amount, amount_paid, status}, signatures always valid."""
    orders = {}

    def fetch(order_id):
        if order_id not in orders:
            raise PaymentError("Payment order not found")
        return {"order_id": order_id, **orders[order_id]}

    monkeypatch.setattr(main, "verify_payment_signature", lambda o, p, s: True)
    monkeypatch.setattr(main, "fetch_payment_order", fetch)
    return orders


def razorpay_payload(order_payload, order_id="order_1", payment_id="pay_1"):
    return {
        **order_payload,
        "payment_method": "Razorpay",
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": "sig",
    }


def test_razorpay_order_requires_verified_payment(client, customer, order_payload, gateway, monkeypatch):
    gateway["order_1"] = {"amount": 124000, "amount_paid": 124000, "status": "paid"}
    payload = {**order_payload, "payment_method": "Razorpay"}
    assert client.post("/api/orders", json=payload, headers=customer["headers"]).status_code == 400

    payload = razorpay_payload(order_payload)
    monkeypatch.setattr(main, "verify_payment_signature", lambda o, p, s: False)
    res = client.post("/api/orders", json=payload, headers=customer["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "Payment verification failed"

    monkeypatch.setattr(main, "verify_payment_signature", lambda o, p, s: (o, p, s) == ("order_1", "pay_1", "sig"))
    res = client.post("/api/orders", json=payload, headers=customer["headers"])
    assert res.status_code == 201
    assert res.json()["payment_status"] == "Paid"
    assert res.json()["razorpay_payment_id"] == "pay_1"


def test_cash_on_delivery_order_has_no_payment_ids(client, customer, placed_order):
    assert placed_order["razorpay_order_id"] is None
    assert placed_order["razorpay_payment_id"] is None


def test_payment_cannot_back_two_orders(client, mongo, customer, order_payload, gateway):
    gateway["order_1"] = {"amount": 124000, "amount_paid": 124000, "status": "paid"}
    first = client.post("/api/orders", json=razorpay_payload(order_payload), headers=customer["headers"])
    assert first.status_code == 201

    again = client.post("/api/orders", json=razorpay_payload(order_payload), headers=customer["headers"])
    other_order = client.post(
        "/api/orders", json=razorpay_payload(order_payload, order_id="order_2"), headers=customer["headers"]
    )

    assert again.status_code == 400
    assert again.json()["detail"] == "Payment already used for another order"
    assert other_order.status_code == 400
    assert mongo["order"].count_documents({}) == 1


def test_payment_amount_must_match_order_total(client, mongo, customer, order_payload, gateway):
    gateway["order_1"] = {"amount": 50000, "amount_paid": 50000, "status": "paid"}
    order_payload["items"][0]["quantity"] = 10

    res = client.post("/api/orders", json=razorpay_payload(order_payload), headers=customer["headers"])

    assert res.status_code == 400
    assert res.json()["detail"] == "Payment amount does not match order total"
    assert mongo["order"].count_documents({}) == 0


def test_unpaid_gateway_order_is_rejected(client, customer, order_payload, gateway):
    gateway["order_1"] = {"amount": 124000, "amount_paid": 0, "status": "attempted"}
    res = client.post("/api/orders", json=razorpay_payload(order_payload), headers=customer["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "Payment not completed"

    res = client.post("/api/orders", json=razorpay_payload(order_payload, order_id="order_x"), headers=customer["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "Payment order not found"


def test_confirmation_email_to_customer_and_admins(client, customer, admin, order_payload, outbox):
    order = client.post("/api/orders", json=order_payload, headers=customer["headers"]).json()

    sent = [(to, order_id) for kind, to, order_id in outbox if kind == "order"]
    assert sorted(sent) == sorted([(customer["email"], order["id"]), (admin["email"], order["id"])])


def test_my_orders_newest_first_with_address(client, customer, order_payload):
    first = client.post("/api/orders", json=order_payload, headers=customer["headers"]).json()
    second = client.post("/api/orders", json=order_payload, headers=customer["headers"]).json()

    orders = client.get("/api/orders/my-orders", headers=customer["headers"]).json()

    assert {o["id"] for o in orders} == {first["id"], second["id"]}
    assert orders[0]["address"]["pincode"] == "560001"
    assert orders[0]["delivery_boy"] is None


def test_order_visibility(client, make_user, admin, rider, placed_order):
    stranger = make_user("customer", email="stranger@bakehub.in")
    url = f"/api/orders/{placed_order['id']}"

    assert client.get(url, headers=stranger["headers"]).status_code == 403
    assert client.get(url, headers=rider["headers"]).status_code == 403
    admin_view = client.get(url, headers=admin["headers"]).json()
    assert admin_view["customer"]["email"] == "asha@bakehub.in"
    assert client.get("/api/orders/64b7f0c2a1b2c3d4e5f60718", headers=admin["headers"]).status_code == 404


def test_admin_lists_and_filters_orders(client, admin, placed_order):
    body = client.get("/api/orders/admin/all", headers=admin["headers"]).json()
    assert body["total"] == 1
    assert body["orders"][0]["customer"]["name"] == "Customer"

    body = client.get("/api/orders/admin/all", params={"status": "Delivered"}, headers=admin["headers"]).json()
    assert body["orders"] == []

    assert client.get("/api/orders/admin/all", params={"status": "Lost"}, headers=admin["headers"]).status_code == 400


def test_admin_status_update(client, admin, placed_order):
    url = f"/api/orders/{placed_order['id']}/status"

    res = client.put(url, json={"order_status": "Preparing"}, headers=admin["headers"])
    assert res.json()["order_status"] == "Preparing"

    assert client.put(url, json={"order_status": "Baking"}, headers=admin["headers"]).status_code == 400
    assert client.put(url, json={"order_status": "Assigned to Delivery Boy"}, headers=admin["headers"]).status_code == 400


def test_assign_delivery_boy(client, admin, rider, placed_order):
    res = client.put(
        f"/api/orders/{placed_order['id']}/assign-delivery",
        json={"delivery_boy_id": rider["id"]},
        headers=admin["headers"],
    )

    assert res.status_code == 200
    order = res.json()
    assert order["order_status"] == "Assigned to Delivery Boy"
    assert order["delivery_boy_id"] == rider["id"]
    assert order["delivery_assigned_at"]
    assert order["delivery_boy"]["vehicle_number"] == "KA01AB1234"


def test_assignment_rejects_non_delivery_user(client, admin, customer, placed_order):
    res = client.put(
        f"/api/orders/{placed_order['id']}/assign-delivery",
        json={"delivery_boy_id": customer["id"]},
        headers=admin["headers"],
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid or inactive delivery boy"


def test_assignment_rejects_inactive_delivery_boy(client, admin, make_user, placed_order):
    retired = make_user("deliveryBoy", email="old@bakehub.in", is_active=False)
    res = client.put(
        f"/api/orders/{placed_order['id']}/assign-delivery",
        json={"delivery_boy_id": retired["id"]},
        headers=admin["headers"],
    )
    assert res.status_code == 400


def test_clearing_assignment_reverts_to_preparing(client, mongo, admin, rider, placed_order):
    url = f"/api/orders/{placed_order['id']}/assign-delivery"
    client.put(url, json={"delivery_boy_id": rider["id"]}, headers=admin["headers"])

    res = client.put(url, json={"delivery_boy_id": ""}, headers=admin["headers"])

    order = res.json()
    assert order["order_status"] == "Preparing"
    assert order.get("delivery_boy_id") is None
    assert order.get("delivery_assigned_at") is None


def test_clearing_assignment_keeps_later_status(client, mongo, admin, rider, placed_order):
    url = f"/api/orders/{placed_order['id']}/assign-delivery"
    client.put(url, json={"delivery_boy_id": rider["id"]}, headers=admin["headers"])
    mongo["order"].update_one({"_id": ObjectId(placed_order["id"])}, {"$set": {"order_status": "Picked Up"}})

    res = client.put(url, json={}, headers=admin["headers"])

    assert res.json()["order_status"] == "Picked Up"


@pytest.mark.parametrize("closed_status", ["Cancelled", "Delivered"])
def test_closed_order_cannot_be_assigned(client, mongo, admin, rider, placed_order, closed_status):
    mongo["order"].update_one({"_id": ObjectId(placed_order["id"])}, {"$set": {"order_status": closed_status}})
    url = f"/api/orders/{placed_order['id']}/assign-delivery"

    assert client.put(url, json={"delivery_boy_id": rider["id"]}, headers=admin["headers"]).status_code == 400
    assert client.put(url, json={"delivery_boy_id": ""}, headers=admin["headers"]).status_code == 400

    order = mongo["order"].find_one({"_id": ObjectId(placed_order["id"])})
    assert order["order_status"] == closed_status
    assert client.get("/api/orders/delivery/my-orders", headers=rider["headers"]).json() == []


def test_delivery_flow(client, admin, rider, make_user, placed_order):
    client.put(f"/api/orders/{placed_order['id']}/assign-delivery", json={"delivery_boy_id": rider["id"]}, headers=admin["headers"])

    mine = client.get("/api/orders/delivery/my-orders", headers=rider["headers"]).json()
    assert [o["id"] for o in mine] == [placed_order["id"]]
    assert mine[0]["customer"]["mobile_number"] == "9876543210"
    assert client.get(f"/api/orders/{placed_order['id']}", headers=rider["headers"]).status_code == 200

    url = f"/api/orders/{placed_order['id']}/delivery-status"
    other_rider = make_user("deliveryBoy", email="other-rider@bakehub.in")
    assert client.put(url, json={"order_status": "Picked Up"}, headers=other_rider["headers"]).status_code == 403
    assert client.put(url, json={"order_status": "Cancelled"}, headers=rider["headers"]).status_code == 400

    for step in ("Picked Up", "Out for Delivery", "Delivered"):
        res = client.put(url, json={"order_status": step}, headers=rider["headers"])
        assert res.json()["order_status"] == step

    assert client.put(url, json={"order_status": "Picked Up"}, headers=rider["headers"]).status_code == 400
    assert client.get("/api/orders/delivery/my-orders", headers=rider["headers"]).json() == []

    dashboard = client.get("/api/delivery-boy/dashboard", headers=rider["headers"]).json()
    assert dashboard["delivered_total"] == 1
    assert dashboard["delivered_today"] == 1
    assert dashboard["active"] == 0


def test_total_invariant_holds_for_every_order(client, mongo, customer, order_payload, make_coupon, monkeypatch):
    import pricing
    monkeypatch.setattr(pricing, "DELIVERY_CHARGE", 40.0)
    make_coupon("FLAT75", discount_type="flat", discount_value=75)

    client.post("/api/orders", json=order_payload, headers=customer["headers"])
    client.post("/api/orders", json={**order_payload, "coupon_code": "FLAT75"}, headers=customer["headers"])

    orders = database.get_documents("order")
    assert len(orders) == 2
    for order in orders:
        assert order["delivery_charge"] == 40.0
        assert order["total"] == pytest.approx(order["subtotal"] - order["discount"] + order["delivery_charge"])
