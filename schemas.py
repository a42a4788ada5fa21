"""
Database Schemas for the BakeHub bakery storefront

Each Pydantic model represents a MongoDB collection. The collection name is the lowercase of the class name.

Collections:
- User
- Category
- Product
- Address
- Coupon
- Banner
- DeliveryPincode
- Order
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["customer", "deliveryBoy", "superAdmin"]
Weight = Literal["½ kg", "1 kg", "2 kg"]
AddressType = Literal["Home", "Work", "Other"]
DiscountType = Literal["percentage", "flat"]
PaymentMethod = Literal["Razorpay", "Cash on Delivery"]
OrderStatus = Literal[
    "Pending",
    "Preparing",
    "Assigned to Delivery Boy",
    "Picked Up",
    "Out for Delivery",
    "Delivered",
    "Cancelled",
]
PaymentStatus = Literal["Pending", "Paid", "Failed", "Refunded"]

ASSIGNED_STATUS = "Assigned to Delivery Boy"
DeliveryStatus = Literal["Picked Up", "Out for Delivery", "Delivered"]
ACTIVE_DELIVERY_STATUSES = (ASSIGNED_STATUS, "Picked Up", "Out for Delivery")
CLOSED_STATUSES = ("Delivered", "Cancelled")


class User(BaseModel):
    email: EmailStr = Field(..., description="Login email, stored lowercased")
    name: str = Field("", description="Display name")
    mobile_number: str = Field("", description="Contact number")
    role: Role = Field("customer", description="customer | deliveryBoy | superAdmin")
    is_active: bool = Field(True, description="Inactive accounts cannot log in")
    vehicle_type: Optional[str] = Field(None, description="Delivery staff only")
    vehicle_number: Optional[str] = Field(None, description="Delivery staff only")


class Category(BaseModel):
    name: str = Field(..., min_length=1, description="Category name (e.g., Cakes, Pastries)")
    description: str = Field("", description="Short description")
    image: str = Field("", description="Image URL")
    is_active: bool = Field(True, description="Shown in the storefront")


class WeightOption(BaseModel):
    weight: Weight
    price: float = Field(..., ge=0, description="Price for this weight")


class Product(BaseModel):
    name: str = Field(..., min_length=1, description="Product name")
    description: str = Field("", description="Product description")
    category: str = Field(..., description="ID of the category this product belongs to")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    price: float = Field(..., ge=0, description="Base price if weight options are not used")
    weight_options: List[WeightOption] = Field(default_factory=list, description="Per-weight pricing")
    is_eggless: bool = Field(False, description="Product is eggless")
    has_egg_option: bool = Field(True, description="Customer may choose the egg variant")
    stock: int = Field(0, ge=0)
    order_count: int = Field(0, ge=0, description="Units ordered so far, drives bestsellers")
    is_active: bool = Field(True, description="Whether product is available for sale")
    is_pre_order: bool = Field(False, description="Sold ahead of availability")
    pre_order_available_date: Optional[datetime] = Field(None, description="Pre-order opens on")
    pre_order_delivery_date: Optional[datetime] = Field(None, description="Earliest delivery for pre-orders")


class AddressFields(BaseModel):
    full_name: str = Field(..., min_length=1)
    mobile_number: str = Field(..., min_length=1)
    house_no: str = ""
    street: str = ""
    city: str = Field(..., min_length=1)
    state: str = ""
    pincode: str = Field(..., pattern=r"^\d{6}$", description="6-digit postal code")
    address_type: AddressType = "Home"
    is_default: bool = False


class Address(AddressFields):
    user_id: str = Field(..., description="Owner user id")


class Coupon(BaseModel):
    code: str = Field(..., min_length=1, description="Stored upper-case")
    description: str = ""
    discount_type: DiscountType = "percentage"
    discount_value: float = Field(..., gt=0)
    min_order_amount: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, gt=0, description="Cap for percentage coupons")
    valid_from: datetime
    valid_until: datetime
    usage_limit: Optional[int] = Field(None, ge=0, description="None or 0 means unlimited")
    used_count: int = Field(0, ge=0)
    is_active: bool = True


class Banner(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    image: str = Field(..., min_length=1, description="Image URL")
    coupon_code: str = ""
    button_text: str = "Order Now"
    is_active: bool = True
    display_order: int = 0


class DeliveryPincode(BaseModel):
    pincode: str = Field(..., pattern=r"^\d{6}$")
    area: str = ""
    city: str = ""
    is_active: bool = True


class OrderItem(BaseModel):
    product_id: str = Field(..., description="ID of the product")
    name: str = Field(..., description="Snapshot of product name at order time")
    weight: str = Field("", description="Chosen weight option, empty for base-priced products")
    is_eggless: bool = False
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at order time")


class Order(BaseModel):
    user_id: str
    address_id: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    coupon_code: str = ""
    delivery_charge: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    commission: float = Field(0, ge=0)
    commission_percentage: float = Field(10, ge=0)
    order_status: OrderStatus = "Pending"
    payment_status: PaymentStatus = "Pending"
    payment_method: PaymentMethod
    razorpay_order_id: Optional[str] = Field(None, description="Set for Razorpay orders, unique")
    razorpay_payment_id: Optional[str] = Field(None, description="Set for Razorpay orders, unique")
    delivery_date: datetime
    delivery_time: str = ""
    delivery_boy_id: Optional[str] = None
    delivery_assigned_at: Optional[datetime] = None
