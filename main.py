import io
import logging
import math
import os
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import BackgroundTasks, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import as_utc, create_document, db, get_documents, update_document, utcnow
from media import ALLOWED_CONTENT_TYPES, MAX_FILE_SIZE, MAX_FILES, UploadError, upload_image
from notifications import EmailDeliveryError, send_order_confirmation, send_otp_email
from payments import PaymentError, create_payment_order, fetch_payment_order, to_paise, verify_payment_signature
from pricing import DELIVERY_CHARGE, evaluate_coupon, find_coupon, quote_order
from schemas import (
    ACTIVE_DELIVERY_STATUSES,
    ASSIGNED_STATUS,
    CLOSED_STATUSES,
    AddressFields,
    Address,
    Banner,
    Category,
    Coupon,
    DeliveryPincode,
    DeliveryStatus,
    Order,
    OrderStatus,
    PaymentMethod,
    Product,
    User,
)
from security import OTPError, OTPStore, create_access_token, create_refresh_token, decode_token

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

SUPER_ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("SUPER_ADMIN_EMAILS", "").split(",") if e.strip()}
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/verify-otp")
otp_store = OTPStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        try:
            db["user"].create_index("email", unique=True)
            db["coupon"].create_index("code", unique=True)
            db["deliverypincode"].create_index("pincode", unique=True)
            db["order"].create_index([("user_id", 1), ("created_at", -1)])
            for field in ("razorpay_order_id", "razorpay_payment_id"):
                db["order"].create_index(field, unique=True, partialFilterExpression={field: {"$type": "string"}})
        except PyMongoError as e:
            logger.warning("Could not ensure indexes: %s", e)
    yield


app = FastAPI(title="BakeHub API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"detail": f"{field}: {message}" if field else message})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


# Utils

def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = _serialize_value(v)
    return out


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def require_db():
    if db is None:
        raise HTTPException(500, "Database not configured")


def parse_object_id(value: str, label: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label} id")


def get_or_404(collection: str, doc_id: str, label: str) -> Dict[str, Any]:
    require_db()
    doc = db[collection].find_one({"_id": parse_object_id(doc_id, label)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label.capitalize()} not found")
    return doc


def paginate(total: int, page: int, limit: int) -> Dict[str, int]:
    return {"total": total, "total_pages": math.ceil(total / limit) if total else 0, "current_page": page}


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "email": user["email"],
        "role": user["role"],
        "name": user.get("name", ""),
        "mobile_number": user.get("mobile_number", ""),
    }


# Auth

def get_current_user(token: str = Depends(oauth2_scheme)):
    user_id = decode_token(token, "access")
    require_db()
    try:
        user = db["user"].find_one({"_id": ObjectId(user_id)})
    except (InvalidId, TypeError):
        user = None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is inactive")
    return serialize_doc(user)


def require_role(*roles: str):
    def checker(user=Depends(get_current_user)):
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="Access denied")
        return user
    return checker


require_admin = require_role("superAdmin")
require_customer = require_role("customer")
require_delivery = require_role("deliveryBoy")


# Health and DB test
@app.get("/")
def read_root():
    return {"message": "BakeHub API ready"}


@app.get("/api/health")
def health():
    return {"status": "OK", "message": "BakeHub backend is running"}


@app.get("/test")
def test_database():
    """Report whether MongoDB is configured and reachable, with per-collection counts."""
    report = {
        "backend": "✅ Running",
        "database": "❌ Not configured",
        "database_name": None,
        "collections": {},
    }
    if db is None:
        report["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
        return report
    report["database_name"] = db.name
    try:
        db.command("ping")
        report["collections"] = {name: db[name].estimated_document_count() for name in sorted(db.list_collection_names())}
        report["database"] = "✅ Connected"
    except PyMongoError as e:
        logger.warning("Database diagnostics failed: %s", e)
        report["database"] = f"⚠️ Unreachable: {str(e)[:80]}"
    return report


# Auth routes
class SendOTPBody(BaseModel):
    email: EmailStr


class VerifyOTPBody(BaseModel):
    email: EmailStr
    otp: str = Field(..., min_length=1)


class RefreshBody(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    mobile_number: Optional[str] = None


@app.post("/api/auth/send-otp")
def send_otp(body: SendOTPBody):
    email = body.email.lower()
    otp = otp_store.issue(email)
    try:
        send_otp_email(email, otp)
    except EmailDeliveryError as e:
        otp_store.discard(email)
        logger.error("OTP sending failed for %s: %s", email, e)
        raise HTTPException(status_code=500, detail=f"Failed to send OTP: {e}")
    return {"message": "OTP sent successfully"}


@app.post("/api/auth/verify-otp")
def verify_otp(body: VerifyOTPBody):
    email = body.email.lower()
    try:
        otp_store.verify(email, body.otp)
    except OTPError as e:
        raise HTTPException(status_code=400, detail=str(e))

    require_db()
    user = db["user"].find_one({"email": email})
    if not user:
        role = "superAdmin" if email in SUPER_ADMIN_EMAILS else "customer"
        user_id = create_document("user", User(email=email, role=role))
        user = db["user"].find_one({"_id": ObjectId(user_id)})
        logger.info("Registered new %s %s", role, email)

    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is inactive")

    user = serialize_doc(user)
    return {
        "message": "Login successful",
        "access_token": create_access_token(user["id"]),
        "refresh_token": create_refresh_token(user["id"]),
        "token_type": "bearer",
        "user": public_user(user),
    }


@app.post("/api/auth/refresh-token")
def refresh_token(body: RefreshBody):
    user_id = decode_token(body.refresh_token, "refresh")
    require_db()
    try:
        user = db["user"].find_one({"_id": ObjectId(user_id)})
    except (InvalidId, TypeError):
        user = None
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    user = serialize_doc(user)
    return {"access_token": create_access_token(user["id"]), "token_type": "bearer", "user": public_user(user)}


@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return public_user(user)


@app.put("/api/auth/profile")
def update_profile(body: ProfileUpdate, user=Depends(get_current_user)):
    changes = {k: v for k, v in body.model_dump().items() if v}
    if changes:
        update_document("user", {"_id": ObjectId(user["id"])}, changes)
    updated = serialize_doc(db["user"].find_one({"_id": ObjectId(user["id"])}))
    return {"message": "Profile updated", "user": public_user(updated)}


# Categories
@app.get("/api/categories")
def list_categories():
    require_db()
    docs = get_documents("category", {"is_active": True}, sort=[("name", 1)])
    return [serialize_doc(d) for d in docs]


@app.get("/api/categories/all", dependencies=[Depends(require_admin)])
def list_all_categories():
    docs = get_documents("category", sort=[("created_at", -1)])
    return [serialize_doc(d) for d in docs]


@app.get("/api/categories/{category_id}")
def get_category(category_id: str):
    return serialize_doc(get_or_404("category", category_id, "category"))


@app.post("/api/categories", status_code=201, dependencies=[Depends(require_admin)])
def create_category(category: Category):
    require_db()
    _id = create_document("category", category)
    return serialize_doc(db["category"].find_one({"_id": ObjectId(_id)}))


@app.put("/api/categories/{category_id}", dependencies=[Depends(require_admin)])
def update_category(category_id: str, category: Category):
    doc = get_or_404("category", category_id, "category")
    update_document("category", {"_id": doc["_id"]}, category.model_dump(exclude_unset=True))
    return serialize_doc(db["category"].find_one({"_id": doc["_id"]}))


@app.delete("/api/categories/{category_id}", dependencies=[Depends(require_admin)])
def delete_category(category_id: str):
    doc = get_or_404("category", category_id, "category")
    in_use = db["product"].count_documents({"category": str(doc["_id"])})
    if in_use:
        raise HTTPException(400, f"Category has {in_use} product(s); move or delete them first")
    db["category"].delete_one({"_id": doc["_id"]})
    return {"message": "Category deleted"}


# Products
def validate_product(product: Product):
    try:
        category = db["category"].find_one({"_id": ObjectId(product.category)})
    except (InvalidId, TypeError):
        category = None
    if not category:
        raise HTTPException(400, "Category not found")
    weights = [w.weight for w in product.weight_options]
    if len(weights) != len(set(weights)):
        raise HTTPException(400, "Duplicate weight option")
    if product.is_pre_order:
        if not (product.pre_order_available_date and product.pre_order_delivery_date):
            raise HTTPException(400, "Pre-order products need available and delivery dates")
        if as_utc(product.pre_order_delivery_date) < as_utc(product.pre_order_available_date):
            raise HTTPException(400, "Pre-order delivery date must not precede the available date")


@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    require_db()
    filter_dict: Dict[str, Any] = {"is_active": True}
    if category:
        filter_dict["category"] = category
    if q:
        pattern = re.escape(q)
        filter_dict["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    total = db["product"].count_documents(filter_dict)
    docs = get_documents("product", filter_dict, limit=limit, skip=(page - 1) * limit, sort=[("created_at", -1)])
    return {"products": [serialize_doc(d) for d in docs], **paginate(total, page, limit)}


@app.get("/api/products/bestsellers")
def bestsellers(limit: int = Query(8, ge=1, le=50)):
    require_db()
    docs = get_documents("product", {"is_active": True}, limit=limit, sort=[("order_count", -1), ("created_at", -1)])
    return [serialize_doc(d) for d in docs]


@app.get("/api/products/all", dependencies=[Depends(require_admin)])
def list_all_products():
    docs = get_documents("product", sort=[("created_at", -1)])
    return [serialize_doc(d) for d in docs]


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    return serialize_doc(get_or_404("product", product_id, "product"))


@app.post("/api/products", status_code=201, dependencies=[Depends(require_admin)])
def create_product(product: Product):
    require_db()
    validate_product(product)
    _id = create_document("product", product.model_copy(update={"order_count": 0}))
    return serialize_doc(db["product"].find_one({"_id": ObjectId(_id)}))


@app.put("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, product: Product):
    doc = get_or_404("product", product_id, "product")
    validate_product(product)
    changes = product.model_dump(exclude_unset=True)
    changes.pop("order_count", None)
    update_document("product", {"_id": doc["_id"]}, changes)
    return serialize_doc(db["product"].find_one({"_id": doc["_id"]}))


@app.delete("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str):
    doc = get_or_404("product", product_id, "product")
    db["product"].delete_one({"_id": doc["_id"]})
    return {"message": "Product deleted"}


# Addresses
def _own_address(address_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    require_db()
    address = db["address"].find_one({"_id": parse_object_id(address_id, "address")})
    if not address or address.get("user_id") != user["id"]:
        raise HTTPException(status_code=404, detail="Address not found")
    return address


def _clear_default(user_id: str, keep: Optional[ObjectId] = None):
    filter_dict: Dict[str, Any] = {"user_id": user_id, "is_default": True}
    if keep is not None:
        filter_dict["_id"] = {"$ne": keep}
    db["address"].update_many(filter_dict, {"$set": {"is_default": False}})


@app.get("/api/addresses")
def list_addresses(user=Depends(require_customer)):
    docs = get_documents("address", {"user_id": user["id"]}, sort=[("is_default", -1), ("created_at", -1)])
    return [serialize_doc(d) for d in docs]


@app.post("/api/addresses", status_code=201)
def create_address(payload: AddressFields, user=Depends(require_customer)):
    has_any = db["address"].count_documents({"user_id": user["id"]}) > 0
    address = Address(user_id=user["id"], **payload.model_dump())
    if not has_any:
        address.is_default = True
    elif address.is_default:
        _clear_default(user["id"])
    _id = create_document("address", address)
    return serialize_doc(db["address"].find_one({"_id": ObjectId(_id)}))


@app.put("/api/addresses/{address_id}")
def update_address(address_id: str, payload: AddressFields, user=Depends(require_customer)):
    address = _own_address(address_id, user)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("is_default"):
        _clear_default(user["id"], keep=address["_id"])
    update_document("address", {"_id": address["_id"]}, changes)
    return serialize_doc(db["address"].find_one({"_id": address["_id"]}))


@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: str, user=Depends(require_customer)):
    address = _own_address(address_id, user)
    db["address"].delete_one({"_id": address["_id"]})
    if address.get("is_default"):
        remaining = get_documents("address", {"user_id": user["id"]}, limit=1, sort=[("created_at", -1)])
        if remaining:
            update_document("address", {"_id": remaining[0]["_id"]}, {"is_default": True})
    return {"message": "Address deleted"}


# Coupons
class CouponVerifyBody(BaseModel):
    code: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)


def validate_coupon_fields(coupon: Coupon):
    if as_utc(coupon.valid_until) <= as_utc(coupon.valid_from):
        raise HTTPException(400, "valid_until must be after valid_from")
    if coupon.discount_type == "percentage" and coupon.discount_value > 100:
        raise HTTPException(400, "Percentage discount cannot exceed 100")


@app.post("/api/coupons/verify")
def verify_coupon(body: CouponVerifyBody, user=Depends(get_current_user)):
    require_db()
    coupon = find_coupon(db, body.code)
    discount = evaluate_coupon(coupon, body.amount)
    return {
        "valid": True,
        "code": coupon["code"],
        "description": coupon.get("description", ""),
        "discount_type": coupon["discount_type"],
        "discount_value": coupon["discount_value"],
        "discount": discount,
        "final_amount": round(body.amount - discount, 2),
    }


@app.get("/api/coupons", dependencies=[Depends(require_admin)])
def list_coupons():
    docs = get_documents("coupon", sort=[("created_at", -1)])
    return [serialize_doc(d) for d in docs]


@app.post("/api/coupons", status_code=201, dependencies=[Depends(require_admin)])
def create_coupon(coupon: Coupon):
    require_db()
    validate_coupon_fields(coupon)
    coupon = coupon.model_copy(update={"code": coupon.code.strip().upper(), "used_count": 0})
    if db["coupon"].find_one({"code": coupon.code}):
        raise HTTPException(400, "Coupon code already exists")
    _id = create_document("coupon", coupon)
    return serialize_doc(db["coupon"].find_one({"_id": ObjectId(_id)}))


@app.put("/api/coupons/{coupon_id}", dependencies=[Depends(require_admin)])
def update_coupon(coupon_id: str, coupon: Coupon):
    doc = get_or_404("coupon", coupon_id, "coupon")
    validate_coupon_fields(coupon)
    changes = coupon.model_dump(exclude_unset=True)
    changes.pop("used_count", None)
    changes["code"] = coupon.code.strip().upper()
    clash = db["coupon"].find_one({"code": changes["code"], "_id": {"$ne": doc["_id"]}})
    if clash:
        raise HTTPException(400, "Coupon code already exists")
    update_document("coupon", {"_id": doc["_id"]}, changes)
    return serialize_doc(db["coupon"].find_one({"_id": doc["_id"]}))


@app.delete("/api/coupons/{coupon_id}", dependencies=[Depends(require_admin)])
def delete_coupon(coupon_id: str):
    doc = get_or_404("coupon", coupon_id, "coupon")
    db["coupon"].delete_one({"_id": doc["_id"]})
    return {"message": "Coupon deleted"}


# Banners
@app.get("/api/banners")
def list_banners():
    require_db()
    docs = get_documents("banner", {"is_active": True}, sort=[("display_order", 1), ("created_at", -1)])
    return [serialize_doc(d) for d in docs]


@app.get("/api/banners/all", dependencies=[Depends(require_admin)])
def list_all_banners():
    docs = get_documents("banner", sort=[("display_order", 1), ("created_at", -1)])
    return [serialize_doc(d) for d in docs]


@app.post("/api/banners", status_code=201, dependencies=[Depends(require_admin)])
def create_banner(banner: Banner):
    require_db()
    _id = create_document("banner", banner.model_copy(update={"coupon_code": banner.coupon_code.strip().upper()}))
    return serialize_doc(db["banner"].find_one({"_id": ObjectId(_id)}))


@app.put("/api/banners/{banner_id}", dependencies=[Depends(require_admin)])
def update_banner(banner_id: str, banner: Banner):
    doc = get_or_404("banner", banner_id, "banner")
    changes = banner.model_dump(exclude_unset=True)
    if "coupon_code" in changes:
        changes["coupon_code"] = changes["coupon_code"].strip().upper()
    update_document("banner", {"_id": doc["_id"]}, changes)
    return serialize_doc(db["banner"].find_one({"_id": doc["_id"]}))


@app.delete("/api/banners/{banner_id}", dependencies=[Depends(require_admin)])
def delete_banner(banner_id: str):
    doc = get_or_404("banner", banner_id, "banner")
    db["banner"].delete_one({"_id": doc["_id"]})
    return {"message": "Banner deleted"}


# Delivery pincodes
class PincodeCheckBody(BaseModel):
    pincode: str = Field(..., min_length=1)


@app.post("/api/delivery-pincodes/check")
def check_pincode(body: PincodeCheckBody):
    require_db()
    pincode = body.pincode.strip()
    doc = db["deliverypincode"].find_one({"pincode": pincode, "is_active": True})
    if not doc:
        return {"available": False, "pincode": pincode, "message": "Delivery not available for this pincode"}
    return {
        "available": True,
        "pincode": pincode,
        "area": doc.get("area", ""),
        "city": doc.get("city", ""),
        "delivery_charge": DELIVERY_CHARGE,
    }


@app.get("/api/delivery-pincodes", dependencies=[Depends(require_admin)])
def list_pincodes():
    docs = get_documents("deliverypincode", sort=[("pincode", 1)])
    return [serialize_doc(d) for d in docs]


@app.post("/api/delivery-pincodes", status_code=201, dependencies=[Depends(require_admin)])
def create_pincode(pincode: DeliveryPincode):
    require_db()
    if db["deliverypincode"].find_one({"pincode": pincode.pincode}):
        raise HTTPException(400, "Pincode already exists")
    _id = create_document("deliverypincode", pincode)
    return serialize_doc(db["deliverypincode"].find_one({"_id": ObjectId(_id)}))


@app.put("/api/delivery-pincodes/{pincode_id}", dependencies=[Depends(require_admin)])
def update_pincode(pincode_id: str, pincode: DeliveryPincode):
    doc = get_or_404("deliverypincode", pincode_id, "pincode")
    if db["deliverypincode"].find_one({"pincode": pincode.pincode, "_id": {"$ne": doc["_id"]}}):
        raise HTTPException(400, "Pincode already exists")
    update_document("deliverypincode", {"_id": doc["_id"]}, pincode.model_dump(exclude_unset=True))
    return serialize_doc(db["deliverypincode"].find_one({"_id": doc["_id"]}))


@app.delete("/api/delivery-pincodes/{pincode_id}", dependencies=[Depends(require_admin)])
def delete_pincode(pincode_id: str):
    doc = get_or_404("deliverypincode", pincode_id, "pincode")
    db["deliverypincode"].delete_one({"_id": doc["_id"]})
    return {"message": "Pincode deleted"}


# Orders
class CartLine(BaseModel):
    product_id: str
    name: str = ""
    weight: str = ""
    is_eggless: Optional[bool] = None
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    items: List[CartLine] = Field(..., min_length=1)
    address_id: str
    coupon_code: str = ""
    payment_method: PaymentMethod
    delivery_date: datetime
    delivery_time: str = ""
    razorpay_order_id: str = ""
    razorpay_payment_id: str = ""
    razorpay_signature: str = ""


class OrderStatusUpdate(BaseModel):
    order_status: OrderStatus


class DeliveryAssignment(BaseModel):
    delivery_boy_id: Optional[str] = None


class DeliveryStatusUpdate(BaseModel):
    order_status: DeliveryStatus


def _user_summary(user_id: Optional[str], fields: tuple) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    try:
        user = db["user"].find_one({"_id": ObjectId(user_id)})
    except (InvalidId, TypeError):
        user = None
    if not user:
        return None
    return {"id": user_id, **{f: user.get(f) for f in fields}}


def expand_order(order: Dict[str, Any], customer_fields: tuple = ()) -> Dict[str, Any]:
    """Serialize an order with its address, delivery boy and (optionally) customer inlined."""
    out = serialize_doc(order)
    try:
        address = db["address"].find_one({"_id": ObjectId(order["address_id"])})
    except (InvalidId, TypeError):
        address = None
    out["address"] = serialize_doc(address)
    out["delivery_boy"] = _user_summary(order.get("delivery_boy_id"), ("name", "mobile_number", "vehicle_type", "vehicle_number"))
    if customer_fields:
        out["customer"] = _user_summary(order.get("user_id"), customer_fields)
    return out


def send_order_emails(order: Dict[str, Any], customer_email: str):
    recipients = [customer_email] + [
        a["email"] for a in db["user"].find({"role": "superAdmin", "is_active": True}) if a.get("email")
    ]
    for email in recipients:
        try:
            send_order_confirmation(email, order)
        except EmailDeliveryError as e:
            logger.warning("Order confirmation to %s failed: %s", email, e)


def confirm_razorpay_payment(payload: CreateOrderRequest, total: float):
    """The payment must be genuine, unused by any other order, and paid in full for `total`."""
    if not (payload.razorpay_order_id and payload.razorpay_payment_id and payload.razorpay_signature):
        raise HTTPException(400, "Razorpay payment details are required")
    used = db["order"].find_one({"$or": [
        {"razorpay_order_id": payload.razorpay_order_id},
        {"razorpay_payment_id": payload.razorpay_payment_id},
    ]})
    if used:
        raise HTTPException(400, "Payment already used for another order")
    try:
        verified = verify_payment_signature(
            payload.razorpay_order_id, payload.razorpay_payment_id, payload.razorpay_signature
        )
    except PaymentError as e:
        raise HTTPException(500, str(e))
    if not verified:
        raise HTTPException(400, "Payment verification failed")
    try:
        gateway_order = fetch_payment_order(payload.razorpay_order_id)
    except PaymentError as e:
        raise HTTPException(400, str(e))
    if gateway_order["status"] != "paid" or gateway_order["amount_paid"] < gateway_order["amount"]:
        raise HTTPException(400, "Payment not completed")
    if gateway_order["amount"] != to_paise(total):
        logger.warning(
            "Razorpay order %s amount %s does not match order total %.2f",
            payload.razorpay_order_id, gateway_order["amount"], total,
        )
        raise HTTPException(400, "Payment amount does not match order total")


@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrderRequest, background_tasks: BackgroundTasks, user=Depends(require_customer)):
    if as_utc(payload.delivery_date).date() < utcnow().date():
        raise HTTPException(400, "Invalid delivery date")

    address = db["address"].find_one({"_id": parse_object_id(payload.address_id, "address")})
    if not address or address.get("user_id") != user["id"]:
        raise HTTPException(status_code=404, detail="Address not found")
    if not db["deliverypincode"].find_one({"pincode": address.get("pincode"), "is_active": True}):
        raise HTTPException(400, "Delivery not available for this pincode")

    quote = quote_order(
        db,
        [line.model_dump() for line in payload.items],
        coupon_code=payload.coupon_code,
        delivery_date=payload.delivery_date,
    )

    if payload.payment_method == "Razorpay":
        confirm_razorpay_payment(payload, quote.total)

    order = Order(
        user_id=user["id"],
        address_id=str(address["_id"]),
        items=quote.items,
        subtotal=quote.subtotal,
        discount=quote.discount,
        coupon_code=quote.coupon_code,
        delivery_charge=quote.delivery_charge,
        total=quote.total,
        commission=quote.commission,
        commission_percentage=quote.commission_percentage,
        payment_method=payload.payment_method,
        payment_status="Paid" if payload.payment_method == "Razorpay" else "Pending",
        razorpay_order_id=payload.razorpay_order_id or None,
        razorpay_payment_id=payload.razorpay_payment_id or None,
        delivery_date=payload.delivery_date,
        delivery_time=payload.delivery_time,
    )
    try:
        order_id = create_document("order", order)
    except DuplicateKeyError:
        raise HTTPException(400, "Payment already used for another order")
    logger.info("Order %s placed by %s, total %.2f", order_id, user["id"], quote.total)

    for item in quote.items:
        db["product"].update_one({"_id": ObjectId(item.product_id)}, {"$inc": {"order_count": item.quantity}})
    if quote.coupon:
        db["coupon"].update_one({"_id": quote.coupon["_id"]}, {"$inc": {"used_count": 1}})

    created = db["order"].find_one({"_id": ObjectId(order_id)})
    background_tasks.add_task(send_order_emails, {**created, "id": order_id}, user["email"])
    return serialize_doc(created)


@app.get("/api/orders/my-orders")
def my_orders(user=Depends(require_customer)):
    docs = get_documents("order", {"user_id": user["id"]}, sort=[("created_at", -1)])
    return [expand_order(d) for d in docs]


@app.get("/api/orders/admin/all", dependencies=[Depends(require_admin)])
def all_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    query: Dict[str, Any] = {}
    if status:
        query["order_status"] = status
    total = db["order"].count_documents(query)
    docs = get_documents("order", query, limit=limit, skip=(page - 1) * limit, sort=[("created_at", -1)])
    orders = [expand_order(d, customer_fields=("name", "email", "mobile_number")) for d in docs]
    return {"orders": orders, **paginate(total, page, limit)}


@app.get("/api/orders/delivery/my-orders")
def delivery_orders(user=Depends(require_delivery)):
    docs = get_documents(
        "order",
        {"delivery_boy_id": user["id"], "order_status": {"$in": list(ACTIVE_DELIVERY_STATUSES)}},
        sort=[("delivery_assigned_at", -1)],
    )
    return [expand_order(d, customer_fields=("name", "mobile_number")) for d in docs]


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    order = get_or_404("order", order_id, "order")
    if user["role"] == "customer" and order.get("user_id") != user["id"]:
        raise HTTPException(status_code=403, detail="Access denied")
    if user["role"] == "deliveryBoy" and order.get("delivery_boy_id") != user["id"]:
        raise HTTPException(status_code=403, detail="Access denied")
    customer_fields = ("name", "email", "mobile_number") if user["role"] != "customer" else ()
    return expand_order(order, customer_fields=customer_fields)


@app.put("/api/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, body: OrderStatusUpdate):
    order = get_or_404("order", order_id, "order")
    if body.order_status == ASSIGNED_STATUS and not order.get("delivery_boy_id"):
        raise HTTPException(400, "Assign a delivery boy to move the order to this status")
    update_document("order", {"_id": order["_id"]}, {"order_status": body.order_status})
    return expand_order(db["order"].find_one({"_id": order["_id"]}))


@app.put("/api/orders/{order_id}/assign-delivery")
def assign_delivery(order_id: str, body: DeliveryAssignment, admin=Depends(require_admin)):
    order = get_or_404("order", order_id, "order")
    if order.get("order_status") in CLOSED_STATUSES:
        raise HTTPException(400, f"Order is already {order['order_status']}")

    if not body.delivery_boy_id:
        changes: Dict[str, Any] = {}
        if order.get("order_status") == ASSIGNED_STATUS:
            changes["order_status"] = "Preparing"
        update_document("order", {"_id": order["_id"]}, changes, unset=["delivery_boy_id", "delivery_assigned_at"])
        logger.info("Delivery assignment cleared on order %s by %s", order_id, admin["id"])
    else:
        try:
            delivery_boy = db["user"].find_one({"_id": ObjectId(body.delivery_boy_id)})
        except (InvalidId, TypeError):
            delivery_boy = None
        if not delivery_boy or delivery_boy.get("role") != "deliveryBoy" or not delivery_boy.get("is_active", True):
            raise HTTPException(400, "Invalid or inactive delivery boy")
        update_document("order", {"_id": order["_id"]}, {
            "delivery_boy_id": str(delivery_boy["_id"]),
            "delivery_assigned_at": utcnow(),
            "order_status": ASSIGNED_STATUS,
        })
        logger.info("Order %s assigned to delivery boy %s", order_id, delivery_boy["_id"])

    return expand_order(db["order"].find_one({"_id": order["_id"]}))


@app.put("/api/orders/{order_id}/delivery-status")
def update_delivery_status(order_id: str, body: DeliveryStatusUpdate, user=Depends(require_delivery)):
    order = get_or_404("order", order_id, "order")
    if order.get("delivery_boy_id") != user["id"]:
        raise HTTPException(status_code=403, detail="Access denied")
    if order.get("order_status") in CLOSED_STATUSES:
        raise HTTPException(400, f"Order is already {order['order_status']}")
    update_document("order", {"_id": order["_id"]}, {"order_status": body.order_status})
    return expand_order(db["order"].find_one({"_id": order["_id"]}), customer_fields=("name", "mobile_number"))


# Delivery boy
class DeliveryProfileUpdate(BaseModel):
    name: Optional[str] = None
    mobile_number: Optional[str] = None
    vehicle_type: Optional[str] = None
    vehicle_number: Optional[str] = None


def delivery_profile(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        **public_user(user),
        "vehicle_type": user.get("vehicle_type"),
        "vehicle_number": user.get("vehicle_number"),
        "is_active": user.get("is_active", True),
    }


@app.get("/api/delivery-boy/dashboard")
def delivery_dashboard(user=Depends(require_delivery)):
    orders = get_documents("order", {"delivery_boy_id": user["id"]})
    today = utcnow().date()
    counts = {s: 0 for s in ACTIVE_DELIVERY_STATUSES}
    delivered_today = 0
    delivered_total = 0
    for o in orders:
        s = o.get("order_status")
        if s in counts:
            counts[s] += 1
        elif s == "Delivered":
            delivered_total += 1
            if as_utc(o.get("updated_at") or o["created_at"]).date() == today:
                delivered_today += 1
    return {
        "assigned": counts[ASSIGNED_STATUS],
        "picked_up": counts["Picked Up"],
        "out_for_delivery": counts["Out for Delivery"],
        "active": sum(counts.values()),
        "delivered_today": delivered_today,
        "delivered_total": delivered_total,
    }


@app.get("/api/delivery-boy/profile")
def get_delivery_profile(user=Depends(require_delivery)):
    return delivery_profile(user)


@app.put("/api/delivery-boy/profile")
def update_delivery_profile(body: DeliveryProfileUpdate, user=Depends(require_delivery)):
    changes = {k: v for k, v in body.model_dump().items() if v is not None}
    if changes:
        update_document("user", {"_id": ObjectId(user["id"])}, changes)
    return delivery_profile(serialize_doc(db["user"].find_one({"_id": ObjectId(user["id"])})))


# Admin
class DeliveryBoyIn(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1)
    mobile_number: str = Field(..., min_length=1)
    vehicle_type: Optional[str] = None
    vehicle_number: Optional[str] = None


class DeliveryBoyUpdate(DeliveryProfileUpdate):
    is_active: Optional[bool] = None


class UserStatusUpdate(BaseModel):
    is_active: bool


def _get_delivery_boy(user_id: str) -> Dict[str, Any]:
    user = get_or_404("user", user_id, "delivery boy")
    if user.get("role") != "deliveryBoy":
        raise HTTPException(404, "Delivery boy not found")
    return user


@app.get("/api/admin/dashboard", dependencies=[Depends(require_admin)])
def admin_dashboard():
    pipeline = [
        {"$match": {"order_status": {"$ne": "Cancelled"}}},
        {"$group": {"_id": None, "orders": {"$sum": 1}, "revenue": {"$sum": "$total"}, "commission": {"$sum": "$commission"}}},
    ]
    res = list(db["order"].aggregate(pipeline))
    summary = res[0] if res else {}
    recent = get_documents("order", limit=5, sort=[("created_at", -1)])
    return {
        "total_orders": db["order"].count_documents({}),
        "pending_orders": db["order"].count_documents({"order_status": "Pending"}),
        "delivered_orders": db["order"].count_documents({"order_status": "Delivered"}),
        "cancelled_orders": db["order"].count_documents({"order_status": "Cancelled"}),
        "revenue": round(summary.get("revenue", 0), 2),
        "commission": round(summary.get("commission", 0), 2),
        "total_customers": db["user"].count_documents({"role": "customer"}),
        "total_delivery_boys": db["user"].count_documents({"role": "deliveryBoy"}),
        "total_products": db["product"].count_documents({}),
        "recent_orders": [serialize_doc(o) for o in recent],
    }


@app.get("/api/admin/delivery-boys", dependencies=[Depends(require_admin)])
def list_delivery_boys(active_only: bool = False):
    query: Dict[str, Any] = {"role": "deliveryBoy"}
    if active_only:
        query["is_active"] = True
    docs = get_documents("user", query, sort=[("name", 1)])
    return [delivery_profile(serialize_doc(d)) for d in docs]


@app.post("/api/admin/delivery-boys", status_code=201, dependencies=[Depends(require_admin)])
def create_delivery_boy(body: DeliveryBoyIn):
    email = body.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(400, "Email already registered")
    _id = create_document("user", User(**body.model_dump(exclude={"email"}), email=email, role="deliveryBoy"))
    return delivery_profile(serialize_doc(db["user"].find_one({"_id": ObjectId(_id)})))


@app.put("/api/admin/delivery-boys/{user_id}", dependencies=[Depends(require_admin)])
def update_delivery_boy(user_id: str, body: DeliveryBoyUpdate):
    user = _get_delivery_boy(user_id)
    changes = {k: v for k, v in body.model_dump().items() if v is not None}
    if changes:
        update_document("user", {"_id": user["_id"]}, changes)
    return delivery_profile(serialize_doc(db["user"].find_one({"_id": user["_id"]})))


@app.delete("/api/admin/delivery-boys/{user_id}", dependencies=[Depends(require_admin)])
def delete_delivery_boy(user_id: str):
    user = _get_delivery_boy(user_id)
    active = db["order"].count_documents({
        "delivery_boy_id": str(user["_id"]),
        "order_status": {"$in": list(ACTIVE_DELIVERY_STATUSES)},
    })
    if active:
        raise HTTPException(400, f"Delivery boy has {active} active order(s); reassign them first")
    db["user"].delete_one({"_id": user["_id"]})
    return {"message": "Delivery boy deleted"}


@app.get("/api/admin/customers", dependencies=[Depends(require_admin)])
def list_customers():
    stats = {
        row["_id"]: row
        for row in db["order"].aggregate([
            {"$group": {"_id": "$user_id", "orders": {"$sum": 1}, "spent": {"$sum": "$total"}}},
        ])
    }
    customers = []
    for doc in get_documents("user", {"role": "customer"}, sort=[("created_at", -1)]):
        user = serialize_doc(doc)
        row = stats.get(user["id"], {})
        customers.append({
            **public_user(user),
            "is_active": user.get("is_active", True),
            "created_at": user.get("created_at"),
            "order_count": row.get("orders", 0),
            "total_spent": round(row.get("spent", 0), 2),
        })
    return customers


@app.put("/api/admin/users/{user_id}/status")
def update_user_status(user_id: str, body: UserStatusUpdate, admin=Depends(require_admin)):
    user = get_or_404("user", user_id, "user")
    if str(user["_id"]) == admin["id"]:
        raise HTTPException(400, "You cannot change your own status")
    update_document("user", {"_id": user["_id"]}, {"is_active": body.is_active})
    return public_user(serialize_doc(db["user"].find_one({"_id": user["_id"]}))) | {"is_active": body.is_active}


# Payments
class PaymentOrderRequest(BaseModel):
    amount: float = Field(..., gt=0, description="Amount in rupees")


class PaymentVerifyRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


@app.post("/api/payments/create-order", dependencies=[Depends(require_customer)])
def create_payment(body: PaymentOrderRequest):
    try:
        return create_payment_order(body.amount, receipt=f"bh_{uuid.uuid4().hex[:20]}")
    except PaymentError as e:
        raise HTTPException(500, str(e))


@app.post("/api/payments/verify", dependencies=[Depends(require_customer)])
def verify_payment(body: PaymentVerifyRequest):
    try:
        verified = verify_payment_signature(body.razorpay_order_id, body.razorpay_payment_id, body.razorpay_signature)
    except PaymentError as e:
        raise HTTPException(500, str(e))
    if not verified:
        raise HTTPException(400, "Payment verification failed")
    return {
        "verified": True,
        "razorpay_order_id": body.razorpay_order_id,
        "razorpay_payment_id": body.razorpay_payment_id,
    }


# Uploads
def _read_image(file: UploadFile) -> io.BytesIO:
    if file.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(400, "Only image files are allowed! (jpg, jpeg, png, gif, webp)")
    data = file.file.read()
    if len(data) > MAX_FILE_SIZE:
        raise HTTPException(400, "File too large. Maximum size is 10MB.")
    if not data:
        raise HTTPException(400, "No file uploaded")
    return io.BytesIO(data)


def _upload(data: io.BytesIO) -> Dict[str, str]:
    try:
        return upload_image(data)
    except UploadError as e:
        raise HTTPException(500, str(e))


@app.post("/api/upload/single", dependencies=[Depends(require_admin)])
def upload_single(image: UploadFile = File(...)):
    result = _upload(_read_image(image))
    return {"message": "File uploaded successfully", "image_url": result["url"], "public_id": result["public_id"]}


@app.post("/api/upload/multiple", dependencies=[Depends(require_admin)])
def upload_multiple(images: List[UploadFile] = File(...)):
    if len(images) > MAX_FILES:
        raise HTTPException(400, "Too many files. Maximum is 10 files.")
    payloads = [_read_image(f) for f in images]
    uploaded = [_upload(p) for p in payloads]
    return {
        "message": "Files uploaded successfully",
        "image_urls": [u["url"] for u in uploaded],
        "images": uploaded,
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
