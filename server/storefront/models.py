from datetime import datetime, date
from typing import List, Dict, Optional, Literal, Any
from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts camelCase (browser client) or snake_case keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---- Auth ----

class SendOTPRequest(BaseModel):
    email: str = Field(..., description="Address to send the login code to")


class VerifyOTPRequest(BaseModel):
    email: str
    otp: str


class GoogleLoginRequest(CamelModel):
    id_token: str


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone_number: Optional[str] = Field(None, max_length=20)
    date_of_birth: Optional[date] = None
    gender: Optional[Literal["male", "female", "other", "prefer_not_to_say"]] = None
    image: Optional[str] = None


# ---- Cart ----

class CartAddRequest(BaseModel):
    """Item as sent by the product page."""
    id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., gt=0)
    image: Optional[str] = None
    category: Optional[str] = None
    variant: Optional[str] = None
    order_type: Optional[str] = Field(None, alias="orderType")
    add_text_on_cake: bool = Field(False, alias="addTextOnCake")
    add_candles: bool = Field(False, alias="addCandles")
    add_knife: bool = Field(False, alias="addKnife")
    add_message_card: bool = Field(False, alias="addMessageCard")
    cake_text: Optional[str] = Field(None, alias="cakeText")
    gift_card_text: Optional[str] = Field(None, alias="giftCardText")

    model_config = ConfigDict(populate_by_name=True)


class CartUpdateRequest(CamelModel):
    product_id: str
    quantity: int
    variant: Optional[str] = None


class CartRemoveRequest(CamelModel):
    product_id: str
    variant: Optional[str] = None


class LocalCartItem(BaseModel):
    id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., gt=0)
    image: Optional[str] = None
    category: Optional[str] = None
    variant: Optional[str] = None
    order_type: Optional[str] = Field(None, alias="orderType")

    model_config = ConfigDict(populate_by_name=True)


class CartSyncRequest(CamelModel):
    local_cart_items: List[LocalCartItem] = []


# ---- Favorites ----

class FavoriteRequest(BaseModel):
    id: str
    name: str
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    rating: float = 0
    is_veg: bool = Field(True, alias="isVeg")

    model_config = ConfigDict(populate_by_name=True)


# ---- Addresses ----

class AddressRequest(BaseModel):
    address_name: str = Field(..., min_length=1)
    full_address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    alternate_phone: Optional[str] = None
    additional_details: Optional[str] = None
    address_type: Literal["Home", "Work", "Other"] = "Home"
    is_default: bool = False


class AddressUpdateRequest(BaseModel):
    address_name: Optional[str] = None
    full_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    alternate_phone: Optional[str] = None
    additional_details: Optional[str] = None
    address_type: Optional[Literal["Home", "Work", "Other"]] = None
    is_default: Optional[bool] = None


class PincodeRequest(BaseModel):
    pincode: str


# ---- Checkout & payment ----

class CheckoutItemRequest(CamelModel):
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    product_description: Optional[str] = None
    category: Optional[str] = None
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)
    variant: Optional[str] = None
    customization_options: Dict[str, Any] = {}
    cake_text: Optional[str] = None
    cake_flavor: Optional[str] = None
    cake_size: Optional[str] = None
    cake_weight: Optional[float] = None
    item_has_knife: bool = False
    item_has_candle: bool = False
    item_has_message_card: bool = False
    item_message_card_text: Optional[str] = None


class ContactInfoRequest(CamelModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=5)
    alternate_phone: Optional[str] = None


class CheckoutCreateRequest(CamelModel):
    items: List[CheckoutItemRequest] = Field(..., min_length=1)
    coupon_code: Optional[str] = None
    selected_address_id: Optional[str] = None
    address_text: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    distance: Optional[float] = Field(None, ge=0)
    delivery_zone: Optional[str] = None
    contact_info: Optional[ContactInfoRequest] = None
    notes: Optional[str] = None
    customization_options: Dict[str, Any] = {}
    cake_text: Optional[str] = None
    message_card_text: Optional[str] = None
    delivery_timing: str = "same_day"
    delivery_date: Optional[str] = None
    delivery_time_slot: Optional[str] = None
    estimated_delivery_time: Optional[str] = None


class CheckoutUpdateRequest(CamelModel):
    contact_info: Optional[ContactInfoRequest] = None
    notes: Optional[str] = None
    address_text: Optional[str] = None
    customization_options: Optional[Dict[str, Any]] = None
    cake_text: Optional[str] = None
    message_card_text: Optional[str] = None
    delivery_timing: Optional[str] = None
    delivery_date: Optional[str] = None
    delivery_time_slot: Optional[str] = None
    estimated_delivery_time: Optional[str] = None


class PaymentOrderRequest(CamelModel):
    checkout_id: str
    amount: int = Field(..., description="Amount in paise")


class PaymentVerifyRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    checkout_id: str = Field(..., alias="checkoutId")

    model_config = ConfigDict(populate_by_name=True)


class DeliveryCalculateRequest(CamelModel):
    order_value: float = Field(0, ge=0)
    distance: Optional[float] = Field(None, ge=0)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    delivery_zone: Optional[str] = None


class CouponValidateRequest(CamelModel):
    code: str = Field(..., min_length=1)
    order_value: float = Field(..., ge=0)
    items: List[CheckoutItemRequest] = []


# ---- Orders ----

class OrderReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=2000)


class ConfirmationItem(BaseModel):
    name: str
    quantity: int = Field(..., gt=0)


class OrderConfirmEmailRequest(CamelModel):
    email: EmailStr
    order_id: str = Field(..., min_length=1)
    items: List[ConfirmationItem] = Field(..., min_length=1)


# ---- Admin ----

class CategoryRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    image: Optional[str] = None
    is_active: bool = True
    position: int = 0


class CategoryUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    is_active: Optional[bool] = None
    position: Optional[int] = None


class CategoryOrderRequest(BaseModel):
    category_ids: List[str] = Field(..., min_length=1)


class ProductOption(BaseModel):
    """A sellable weight or piece option."""
    model_config = ConfigDict(extra="allow")

    price: float = Field(..., ge=0)
    weight: Optional[str] = None
    quantity: Optional[str] = None
    stock: Optional[int] = None
    is_active: bool = Field(True, alias="isActive")


class ProductRequest(BaseModel):
    name: str = Field(..., min_length=1)
    short_description: str = ""
    long_description: str = ""
    category_id: Optional[str] = None
    is_veg: bool = True
    has_offer: bool = False
    offer_percentage: float = Field(0, ge=0, le=100)
    offer_up_to_price: float = Field(0, ge=0)
    weight_options: List[ProductOption] = []
    piece_options: List[ProductOption] = []
    selling_type: Literal["weight", "piece", "both"] = "weight"
    banner_image: Optional[str] = None
    images: List[str] = []
    is_active: bool = True


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    short_description: Optional[str] = None
    long_description: Optional[str] = None
    category_id: Optional[str] = None
    is_veg: Optional[bool] = None
    has_offer: Optional[bool] = None
    offer_percentage: Optional[float] = Field(None, ge=0, le=100)
    offer_up_to_price: Optional[float] = Field(None, ge=0)
    weight_options: Optional[List[ProductOption]] = None
    piece_options: Optional[List[ProductOption]] = None
    selling_type: Optional[Literal["weight", "piece", "both"]] = None
    banner_image: Optional[str] = None
    images: Optional[List[str]] = None
    is_active: Optional[bool] = None


class BannerItem(CamelModel):
    image_url: str = Field(..., min_length=1)
    redirect_url: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)
    is_active: bool = True


class BannerSaveRequest(CamelModel):
    type: Literal["hero", "footer"]
    device_type: Literal["desktop", "mobile"] = "desktop"
    banners: List[BannerItem] = Field(..., min_length=1)


class PopupBannerRequest(CamelModel):
    image_url: str = Field(..., min_length=1)
    redirect_url: Optional[str] = None
    is_active: bool = True


class CouponRequest(CamelModel):
    code: str = Field(..., min_length=1, max_length=40)
    type: Literal["flat", "percentage"]
    value: float = Field(..., gt=0)
    min_order_amount: float = Field(0, ge=0)
    max_discount_cap: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, gt=0)
    usage_per_user: int = Field(1, gt=0)
    enable_usage_limit: bool = False
    valid_from: datetime
    valid_until: datetime
    applicable_categories: Optional[List[str]] = None
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _uppercase_code(cls, v: str) -> str:
        return v.strip().upper()


class CouponPatchRequest(CamelModel):
    is_active: Optional[bool] = None


class DeliveryChargeRequest(BaseModel):
    type: Literal["order_value", "distance"]
    order_value_threshold: Optional[float] = Field(None, ge=0)
    delivery_type: Optional[Literal["free", "fixed"]] = None
    fixed_price: Optional[float] = Field(None, ge=0)
    start_km: Optional[float] = Field(None, ge=0)
    end_km: Optional[float] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)
    is_active: bool = True


class DeliveryChargeUpdateRequest(BaseModel):
    type: Optional[Literal["order_value", "distance"]] = None
    order_value_threshold: Optional[float] = Field(None, ge=0)
    delivery_type: Optional[Literal["free", "fixed"]] = None
    fixed_price: Optional[float] = Field(None, ge=0)
    start_km: Optional[float] = Field(None, ge=0)
    end_km: Optional[float] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)
    is_active: Optional[bool] = None


class TaxSettingsRequest(BaseModel):
    cgst_rate: float = Field(..., ge=0, le=100)
    sgst_rate: float = Field(..., ge=0, le=100)


class OrderStatusUpdateRequest(CamelModel):
    status: Literal[
        "pending", "confirmed", "preparing", "ready", "out_for_delivery", "delivered", "cancelled"
    ]
    delivery_person_name: Optional[str] = None
    delivery_person_contact: Optional[str] = None


class UserRoleRequest(BaseModel):
    role: Literal["user", "admin"]


class ImageDeleteRequest(CamelModel):
    public_id: str = Field(..., min_length=1)
