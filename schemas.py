"""
Database Schemas for ImportMadeEasy

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase of the class name.
Nested models are embedded documents.
"""
from typing import Optional, List, Literal, Dict, Any
from pydantic import BaseModel, Field, EmailStr, field_validator
from datetime import datetime

HEX_COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"
NO_SIZE = "N/A"


# Users collection
class DeliveryInfo(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zipcode: str = ""
    country: str = "Cameroon"


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password_hash: str = Field(..., min_length=10)
    phone: str = ""
    # product id -> variant key -> quantity
    cart_data: Dict[str, Dict[str, int]] = {}
    delivery_info: DeliveryInfo = Field(default_factory=DeliveryInfo)
    favorites: List[str] = []
    is_active: bool = True
    date: Optional[datetime] = None


# Products collection
class SizeEntry(BaseModel):
    size: str = Field(..., min_length=1)
    quantity: int = Field(0, ge=0)
    # only set for products priced per size (phones)
    price: Optional[float] = Field(default=None, ge=0)


class ColorVariant(BaseModel):
    color_name: str = Field(..., min_length=1)
    color_hex: str = Field(..., pattern=HEX_COLOR_PATTERN)
    color_images: List[str] = Field(default_factory=list, max_length=4)
    sizes: List[SizeEntry] = Field(..., min_length=1)


class Review(BaseModel):
    id: str
    user_id: str
    user_name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)
    created_at: Optional[datetime] = None


class UserPhoto(BaseModel):
    image_url: str
    user_id: str
    upload_date: Optional[datetime] = None


class Product(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    image: List[str] = []
    category: str
    subcategory: str = ""
    subsubcategory: str = ""
    colors: List[ColorVariant] = Field(..., min_length=1)
    bestseller: bool = False
    preorder: bool = False
    label: Literal["New model", "Limited Edition", ""] = ""
    has_sizes: bool = True
    size_type: Literal["clothing", "shoes", "phone"] = "clothing"
    keywords: List[str] = []
    country_of_origin: Literal["Nigeria", "China"] = "Nigeria"
    delivery_method: Literal["Standard", "Express", "Premium"] = "Standard"
    product_type: Literal["Express", "Normal"] = "Normal"
    weight: float = Field(0.1, ge=0.01)
    reviews: List[Review] = []
    average_rating: float = 0
    total_reviews: int = 0
    user_photos: List[UserPhoto] = []
    date: Optional[datetime] = None


# Orders collection
class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    size: str = NO_SIZE
    color: Optional[str] = None
    quantity: int = Field(..., ge=1)
    weight: float = Field(0.1, ge=0)


class Shipping(BaseModel):
    method: Literal["air", "sea", "land"] = "sea"
    cost: float = Field(0, ge=0)
    weight: float = Field(0, ge=0)
    country: Literal["nigeria", "china"] = "china"


class Order(BaseModel):
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    address: Dict[str, Any]
    # free-form, any string the admin panel sends is accepted
    status: str = "Order Placed"
    payment_method: str
    payment: bool = False
    date: Optional[datetime] = None
    shipping: Shipping = Field(default_factory=Shipping)
    transaction_id: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None


# Admin accounts collection
class AdminPermissions(BaseModel):
    dashboard: bool = True
    orders: bool = True
    categories: bool = True
    products: bool = True
    messages: bool = True
    users: bool = False
    settings: bool = False
    affiliates: bool = False
    analytics: bool = False
    admin_management: bool = False


class Admin(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password_hash: str = Field(..., min_length=10)
    role: Literal["super_admin", "assistant_admin"] = "assistant_admin"
    permissions: AdminPermissions = Field(default_factory=AdminPermissions)
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_by: Optional[str] = None

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        return v.strip()

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.strip().lower()


# Affiliate program
class ApplicationData(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    website: Optional[str] = None
    social_media: Optional[str] = None
    experience: Optional[str] = None
    reason: str = Field(..., min_length=1)
    traffic_source: Literal["website", "instagram", "youtube", "tiktok", "facebook", "email", "other"]


class AffiliateStats(BaseModel):
    total_clicks: int = 0
    total_signups: int = 0
    total_sales: int = 0
    total_earnings: float = 0
    conversion_rate: float = 0


class PaymentInfo(BaseModel):
    method: Literal["bank_transfer", "paypal", "stripe", "mobile_money"] = "bank_transfer"
    details: Dict[str, Any] = {}


class Affiliate(BaseModel):
    user_id: str
    affiliate_code: str = Field(..., min_length=4)
    status: Literal["pending", "approved", "rejected", "suspended"] = "pending"
    application_data: ApplicationData
    commission_rate: float = Field(0.05, ge=0, le=1)
    stats: AffiliateStats = Field(default_factory=AffiliateStats)
    payment_info: PaymentInfo = Field(default_factory=PaymentInfo)
    is_active: bool = True
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    last_payout_date: Optional[datetime] = None
    next_payout_amount: float = 0

    @field_validator("affiliate_code")
    @classmethod
    def uppercase_code(cls, v: str) -> str:
        return v.upper()


# Event log of affiliate traffic
class ReferralMetadata(BaseModel):
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None


class Referral(BaseModel):
    affiliate_id: str
    affiliate_code: str
    type: Literal["click", "signup", "purchase"]
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    metadata: ReferralMetadata = Field(default_factory=ReferralMetadata)
    amount: float = 0
    commission: float = 0
    commission_rate: float = 0
    status: Literal["pending", "confirmed", "paid", "cancelled"] = "pending"
    paid_at: Optional[datetime] = None


# Storefront settings (a single document)
class CurrencySetting(BaseModel):
    name: str = "XAF"
    sign: str = "FCFA"


class SiteImages(BaseModel):
    hero: List[str] = []
    banner: str = ""


class SiteText(BaseModel):
    hero: str = ""
    banner: str = ""


class SiteLink(BaseModel):
    """Where a hero or banner click leads: a product, or a category path."""
    product_id: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    subsubcategory: Optional[str] = None


class LegalText(BaseModel):
    privacy_policy: str = ""
    terms_and_conditions: str = ""


class Settings(BaseModel):
    currency: CurrencySetting = Field(default_factory=CurrencySetting)
    notification_email: str = ""
    images: SiteImages = Field(default_factory=SiteImages)
    text: SiteText = Field(default_factory=SiteText)
    hero_link: SiteLink = Field(default_factory=SiteLink)
    banner_link: SiteLink = Field(default_factory=SiteLink)
    legal: LegalText = Field(default_factory=LegalText)
