import uuid
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from security import create_access_token


@pytest.fixture
def mongo(monkeypatch):
    mongo_client = mongomock.MongoClient()
    name = f"bakehub_test_{uuid.uuid4().hex[:8]}"
    test_db = mongo_client[name]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    yield test_db
    mongo_client.drop_database(name)


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    """Captured emails instead of SMTP: (kind, to, payload)."""
    sent = []
    monkeypatch.setattr(main, "send_otp_email", lambda email, otp: sent.append(("otp", email, otp)))
    monkeypatch.setattr(main, "send_order_confirmation", lambda email, order: sent.append(("order", email, order["id"])))
    return sent


@pytest.fixture
def make_user(mongo):
    def _make(role="customer", email=None, **extra):
        email = email or f"{role.lower()}{mongo['user'].count_documents({})}@bakehub.in"
        doc = {"email": email, "name": role.title(), "mobile_number": "9876543210", "role": role, "is_active": True, **extra}
        user_id = database.create_document("user", doc)
        return {
            "id": user_id,
            "email": email,
            "headers": {"Authorization": f"Bearer {create_access_token(user_id)}"},
        }
    return _make


@pytest.fixture
def customer(make_user):
    return make_user("customer", email="asha@bakehub.in")


@pytest.fixture
def admin(make_user):
    return make_user("superAdmin", email="owner@bakehub.in")


@pytest.fixture
def rider(make_user):
    return make_user("deliveryBoy", email="ravi@bakehub.in", vehicle_type="Bike", vehicle_number="KA01AB1234")


@pytest.fixture
def catalog(mongo):
    category_id = database.create_document("category", {"name": "Cakes", "description": "", "image": "", "is_active": True})
    truffle = database.create_document("product", {
        "name": "Chocolate Truffle",
        "category": category_id,
        "price": 300,
        "weight_options": [{"weight": "½ kg", "price": 300}, {"weight": "1 kg", "price": 500}],
        "is_eggless": False,
        "has_egg_option": True,
        "order_count": 0,
        "is_active": True,
        "is_pre_order": False,
    })
    brownie = database.create_document("product", {
        "name": "Walnut Brownie",
        "category": category_id,
        "price": 80,
        "weight_options": [],
        "is_eggless": True,
        "has_egg_option": False,
        "order_count": 0,
        "is_active": True,
    })
    retired = database.create_document("product", {
        "name": "Old Fruit Cake",
        "category": category_id,
        "price": 250,
        "weight_options": [],
        "order_count": 0,
        "is_active": False,
    })
    return {"category": category_id, "truffle": truffle, "brownie": brownie, "retired": retired}


@pytest.fixture
def address(mongo, customer):
    database.create_document("deliverypincode", {"pincode": "560001", "area": "MG Road", "city": "Bengaluru", "is_active": True})
    address_id = database.create_document("address", {
        "user_id": customer["id"],
        "full_name": "Asha Rao",
        "mobile_number": "9876543210",
        "house_no": "12",
        "street": "Church Street",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560001",
        "address_type": "Home",
        "is_default": True,
    })
    return address_id


@pytest.fixture
def make_coupon(mongo):
    def _make(code="SWEET10", **overrides):
        now = datetime.now(timezone.utc)
        doc = {
            "code": code,
            "description": "",
            "discount_type": "percentage",
            "discount_value": 10,
            "min_order_amount": 0,
            "max_discount": None,
            "valid_from": now - timedelta(days=1),
            "valid_until": now + timedelta(days=30),
            "usage_limit": None,
            "used_count": 0,
            "is_active": True,
            **overrides,
        }
        database.create_document("coupon", doc)
        return mongo["coupon"].find_one({"code": code})
    return _make
