import os
import re
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional, Dict, Any

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, HTTPException, Depends, Request, File, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, EmailStr, ValidationError
from email_validator import validate_email, EmailNotValidError
from bson import ObjectId
from pymongo import ReturnDocument

import media
import payments
from database import db, create_document, get_documents
from schemas import (
    User, Product, Order, Admin, Affiliate, ApplicationData, DeliveryInfo, Shipping, NO_SIZE,
    Settings, CurrencySetting, SiteText, SiteLink, LegalText,
)
from auth import (
    hash_password,
    verify_password,
    create_user_token,
    create_admin_token,
    get_current_user,
    get_current_admin,
    require_super_admin,
    require_permission,
    permissions_for_role,
)
from catalog import (
    CatalogError,
    parse_colors,
    parse_bool,
    parse_keywords,
    normalize_label,
    parse_weight,
    rating_fields,
    set_variant_quantity,
    merge_color_images,
)
from cart import CartError, add_item, set_quantity, reconcile, cart_amount, order_lines
from shipping import ShippingError, calculate_shipping, shipping_options
from referrals import (
    find_active_affiliate,
    generate_affiliate_code,
    settle_payout,
    track_click,
    track_signup,
    track_purchase,
)
from meta_tags import CURRENCY, CURRENCY_SYMBOL, is_bot, product_meta, render_product_page, render_default_page

# Environment
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="ImportMadeEasy API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Simple in-memory rate limiting for login (per-IP)
RATE_LIMIT_WINDOW_SEC = 60 * 15  # 15 minutes
RATE_LIMIT_MAX_ATTEMPTS = 20
rate_store: Dict[str, List[float]] = {}


def check_rate_limit(ip: str):
    now = datetime.now().timestamp()
    bucket = rate_store.get(ip, [])
    # drop old timestamps
    bucket = [t for t in bucket if now - t <= RATE_LIMIT_WINDOW_SEC]
    if len(bucket) >= RATE_LIMIT_MAX_ATTEMPTS:
        raise HTTPException(status_code=429, detail="Too many login attempts. Please try again later.")
    bucket.append(now)
    rate_store[ip] = bucket


# Utilities
def to_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id")


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    doc.pop("password_hash", None)
    return doc


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive UTC datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def request_metadata(request: Request) -> dict:
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "referrer": request.headers.get("referer"),
    }


def get_product_or_404(product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id)})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def products_for_cart(cart: dict) -> Dict[str, dict]:
    ids = [ObjectId(pid) for pid in cart if ObjectId.is_valid(pid)]
    if not ids:
        return {}
    return {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})}


def save_cart(user_id: str, cart: dict):
    db["user"].update_one(
        {"_id": ObjectId(user_id)},
        {"$set": {"cart_data": cart}, "$currentDate": {"updated_at": True}},
    )


# Health checks
@app.get("/")
def root():
    return {"message": "API working"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:100]}"
    return response


# ----------------------- Users -----------------------
class RegisterPayload(BaseModel):
    name: str
    email: str
    password: str
    referral_code: Optional[str] = None


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


@app.post("/api/user/register")
def register(payload: RegisterPayload, request: Request):
    try:
        email = validate_email(payload.email, check_deliverability=False).normalized
    except EmailNotValidError:
        raise HTTPException(status_code=400, detail="Please enter a valid email")
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="User already exists")
    if len(payload.password) < 8:
        raise HTTPException(status_code=400, detail="Please enter a password of at least 8 characters")
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="Please enter your name")

    user = User(
        name=payload.name.strip(),
        email=email,
        password_hash=hash_password(payload.password),
        date=datetime.now(timezone.utc),
    )
    user_id = create_document("user", user)

    if payload.referral_code:
        # never blocks registration
        track_signup(payload.referral_code, user_id, request_metadata(request))

    return {"success": True, "token": create_user_token(user_id)}


@app.post("/api/user/login")
def login(payload: LoginPayload, request: Request):
    ip = request.client.host if request.client else "unknown"
    check_rate_limit(ip)

    doc = db["user"].find_one({"email": payload.email})
    if not doc:
        raise HTTPException(status_code=401, detail="User doesn't exist")
    if not verify_password(payload.password, doc.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"success": True, "token": create_user_token(str(doc["_id"]))}


class FavoritePayload(BaseModel):
    product_id: str


@app.get("/api/user/favorites")
def get_favorites(user: dict = Depends(get_current_user)):
    ids = [ObjectId(pid) for pid in user.get("favorites", []) if ObjectId.is_valid(pid)]
    products = [serialize(p) for p in db["product"].find({"_id": {"$in": ids}})] if ids else []
    return {"success": True, "favorites": products}


@app.post("/api/user/favorites/toggle")
def toggle_favorite(payload: FavoritePayload, user: dict = Depends(get_current_user)):
    get_product_or_404(payload.product_id)
    if payload.product_id in user.get("favorites", []):
        db["user"].update_one({"_id": ObjectId(user["_id"])}, {"$pull": {"favorites": payload.product_id}})
        return {"success": True, "message": "Removed from favorites", "favorite": False}
    db["user"].update_one({"_id": ObjectId(user["_id"])}, {"$addToSet": {"favorites": payload.product_id}})
    return {"success": True, "message": "Added to favorites", "favorite": True}


def order_stats(orders: List[dict]) -> dict:
    total_orders = len(orders)
    total_spent = sum(o.get("amount", 0) for o in orders)
    return {
        "total_orders": total_orders,
        "total_spent": total_spent,
        "average_order_value": total_spent / total_orders if total_orders else 0,
    }


@app.get("/api/user/profile")
def get_profile(user: dict = Depends(get_current_user)):
    orders = list(db["order"].find({"user_id": user["_id"]}).sort("date", -1))
    stats = order_stats(orders)
    stats["last_order_date"] = orders[0].get("date") if orders else None

    recent_orders = [
        {k: serialize(o).get(k) for k in ("_id", "date", "amount", "status", "payment_method", "items")}
        for o in orders[:5]
    ]
    delivery_info = user.get("delivery_info") or DeliveryInfo(email=user["email"]).model_dump()
    favorites = get_favorites(user)["favorites"]
    return {
        "success": True,
        "user": {
            "name": user.get("name"),
            "email": user.get("email"),
            "phone": user.get("phone", ""),
            "date_joined": user.get("date") or user.get("created_at"),
        },
        "stats": stats,
        "recent_orders": recent_orders,
        "delivery_info": delivery_info,
        "favorites": favorites,
    }


class UpdateInfoPayload(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None


@app.put("/api/user/update-info")
def update_info(payload: UpdateInfoPayload, user: dict = Depends(get_current_user)):
    update = {k: v for k, v in payload.model_dump().items() if v}
    if update:
        db["user"].update_one({"_id": ObjectId(user["_id"])}, {"$set": update, "$currentDate": {"updated_at": True}})
    return {"success": True, "message": "Profile updated successfully"}


@app.put("/api/user/delivery-info")
def save_delivery_info(payload: DeliveryInfo, user: dict = Depends(get_current_user)):
    db["user"].update_one(
        {"_id": ObjectId(user["_id"])},
        {"$set": {"delivery_info": payload.model_dump()}, "$currentDate": {"updated_at": True}},
    )
    return {"success": True, "message": "Delivery information saved successfully"}


class ChangePasswordPayload(BaseModel):
    current_password: str
    new_password: str


@app.put("/api/user/change-password")
def change_password(payload: ChangePasswordPayload, user: dict = Depends(get_current_user)):
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    if len(payload.new_password) < 8:
        raise HTTPException(status_code=400, detail="Please enter a password of at least 8 characters")
    db["user"].update_one(
        {"_id": ObjectId(user["_id"])},
        {"$set": {"password_hash": hash_password(payload.new_password)}, "$currentDate": {"updated_at": True}},
    )
    return {"success": True, "message": "Password changed successfully"}


@app.get("/api/user/stats")
def user_stats(user: dict = Depends(get_current_user)):
    orders = list(db["order"].find({"user_id": user["_id"]}))
    now = datetime.now(timezone.utc)
    monthly = [
        o for o in orders
        if o.get("date") and as_utc(o["date"]).year == now.year and as_utc(o["date"]).month == now.month
    ]
    stats = order_stats(orders)
    stats["monthly_orders"] = len(monthly)
    stats["monthly_spent"] = sum(o.get("amount", 0) for o in monthly)
    return {"success": True, "stats": stats}


# ----------------------- Admin accounts -----------------------
class AdminLoginPayload(BaseModel):
    email: EmailStr
    password: str


class AdminCreatePayload(BaseModel):
    username: str
    email: EmailStr
    password: str
    role: str = "assistant_admin"


class AdminUpdatePayload(BaseModel):
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None


def admin_summary(admin: dict) -> dict:
    return {
        "id": str(admin["_id"]),
        "username": admin.get("username"),
        "email": admin.get("email"),
        "role": admin.get("role"),
        "permissions": admin.get("permissions"),
        "is_active": admin.get("is_active"),
        "last_login": admin.get("last_login"),
    }


@app.post("/api/admin-auth/login")
def admin_login(payload: AdminLoginPayload, request: Request):
    ip = request.client.host if request.client else "unknown"
    check_rate_limit(ip)

    admin = db["admin"].find_one({"email": payload.email.lower(), "is_active": True})
    if not admin or not verify_password(payload.password, admin.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    now = datetime.now(timezone.utc)
    db["admin"].update_one({"_id": admin["_id"]}, {"$set": {"last_login": now, "updated_at": now}})
    admin["last_login"] = now
    token = create_admin_token(str(admin["_id"]), admin["role"], admin["permissions"])
    return {"success": True, "message": "Login successful", "token": token, "admin": admin_summary(admin)}


@app.get("/api/admin-auth/profile")
def admin_profile(admin: dict = Depends(get_current_admin)):
    return {"success": True, "admin": admin_summary(admin)}


@app.post("/api/admin-auth/create")
def create_admin(payload: AdminCreatePayload, admin: dict = Depends(require_super_admin)):
    if len(payload.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
    email = payload.email.lower()
    if db["admin"].find_one({"$or": [{"email": email}, {"username": payload.username.strip()}]}):
        raise HTTPException(status_code=409, detail="Admin with this email or username already exists")
    try:
        new_admin = Admin(
            username=payload.username,
            email=email,
            password_hash=hash_password(payload.password),
            role=payload.role,
            permissions=permissions_for_role(payload.role),
            created_by=admin["_id"],
        )
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    admin_id = create_document("admin", new_admin)
    created = db["admin"].find_one({"_id": ObjectId(admin_id)})
    return {"success": True, "message": "Admin created successfully", "admin": admin_summary(created)}


@app.get("/api/admin-auth/all")
def list_admins(admin: dict = Depends(require_super_admin)):
    admins = db["admin"].find({"is_active": True}).sort("created_at", -1)
    return {"success": True, "admins": [serialize(a) for a in admins]}


@app.put("/api/admin-auth/{admin_id}")
def update_admin(admin_id: str, payload: AdminUpdatePayload, admin: dict = Depends(require_super_admin)):
    target = db["admin"].find_one({"_id": to_object_id(admin_id)})
    if not target:
        raise HTTPException(status_code=404, detail="Admin not found")

    update: Dict[str, Any] = {k: v for k, v in payload.model_dump().items() if v is not None}
    if "email" in update:
        update["email"] = update["email"].lower()
    role = update.get("role", target["role"])
    try:
        # permissions always follow the role
        update["permissions"] = permissions_for_role(role)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    update["updated_at"] = datetime.now(timezone.utc)
    db["admin"].update_one({"_id": target["_id"]}, {"$set": update})
    updated = db["admin"].find_one({"_id": target["_id"]})
    return {"success": True, "message": "Admin updated successfully", "admin": admin_summary(updated)}


@app.delete("/api/admin-auth/{admin_id}")
def delete_admin(admin_id: str, admin: dict = Depends(require_super_admin)):
    if admin_id == admin["_id"]:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    res = db["admin"].update_one(
        {"_id": to_object_id(admin_id)},
        {"$set": {"is_active": False}, "$currentDate": {"updated_at": True}},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Admin not found")
    return {"success": True, "message": "Admin deleted successfully"}


# ----------------------- Products -----------------------
PRODUCT_TEXT_FIELDS = ("name", "description", "category", "subcategory", "subsubcategory",
                       "size_type", "country_of_origin", "delivery_method", "product_type")


def store_image(file, folder: str) -> str:
    try:
        return media.upload_image(file, folder=folder)
    except media.MediaError as e:
        logger.error("Image upload to %s failed: %s", folder, e)
        raise HTTPException(status_code=502, detail="Image upload failed")


async def upload_form_images(form, field: str, folder: str = "products") -> List[str]:
    urls = []
    for upload in form.getlist(field):
        if isinstance(upload, str) or not getattr(upload, "filename", None):
            continue
        urls.append(store_image(upload.file, folder))
    return urls


def product_fields(form) -> dict:
    """Coerce the admin form's string values into product fields."""
    fields: Dict[str, Any] = {k: form[k] for k in PRODUCT_TEXT_FIELDS if form.get(k) is not None}
    if form.get("price") is not None:
        try:
            fields["price"] = float(form["price"])
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid price")
    for key in ("bestseller", "preorder", "has_sizes"):
        if form.get(key) is not None:
            fields[key] = parse_bool(form[key])
    if form.get("label") is not None:
        fields["label"] = normalize_label(form["label"])
    if form.get("keywords") is not None:
        fields["keywords"] = parse_keywords(form["keywords"])
    if form.get("weight") is not None:
        fields["weight"] = parse_weight(form["weight"])
    return fields


@app.post("/api/product/add")
async def add_product(request: Request, admin: dict = Depends(require_permission("products"))):
    form = await request.form()
    try:
        colors = parse_colors(form.get("colors"))
    except CatalogError as e:
        raise HTTPException(status_code=400, detail=str(e))

    fields = product_fields(form)
    fields["image"] = await upload_form_images(form, "image")
    new_images = {i: await upload_form_images(form, f"color_images_{i}") for i in range(len(colors))}
    fields["colors"] = merge_color_images(colors, new_images)
    fields.setdefault("size_type", "clothing")
    fields.setdefault("weight", 0.1)
    fields["date"] = datetime.now(timezone.utc)

    try:
        product = Product(**fields)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False, include_input=False))
    product_id = create_document("product", product)
    logger.info("Product %s added by %s", product_id, admin.get("username"))
    return {"success": True, "message": "Product added successfully", "product_id": product_id}


@app.get("/api/product/list")
def list_products(q: Optional[str] = None, category: Optional[str] = None, bestseller: Optional[bool] = None):
    filter_q: Dict[str, Any] = {}
    if q:
        filter_q["$or"] = [
            {"name": {"$regex": re.escape(q), "$options": "i"}},
            {"keywords": {"$regex": re.escape(q), "$options": "i"}},
        ]
    if category:
        filter_q["category"] = category
    if bestseller is not None:
        filter_q["bestseller"] = bestseller
    items = db["product"].find(filter_q).sort("date", -1)
    return {"success": True, "products": [serialize(p) for p in items]}


class ProductIdPayload(BaseModel):
    product_id: str


@app.post("/api/product/single")
def single_product(payload: ProductIdPayload):
    return {"success": True, "product": serialize(get_product_or_404(payload.product_id))}


@app.post("/api/product/remove")
def remove_product(payload: ProductIdPayload, admin: dict = Depends(require_permission("products"))):
    res = db["product"].delete_one({"_id": to_object_id(payload.product_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Could not find a product to delete")
    return {"success": True, "message": "Product deleted"}


class QuantityPayload(BaseModel):
    product_id: str
    color: str
    size: Optional[str] = None
    quantity: int


@app.post("/api/product/quantity")
def update_stock(payload: QuantityPayload, admin: dict = Depends(require_permission("products"))):
    product = get_product_or_404(payload.product_id)
    try:
        colors = set_variant_quantity(product, payload.color, payload.size, payload.quantity)
    except CatalogError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"colors": colors}, "$currentDate": {"updated_at": True}})
    return {"success": True, "message": "Quantity updated successfully"}


class ReviewPayload(BaseModel):
    product_id: str
    rating: int
    comment: str


@app.post("/api/product/review")
def add_review(payload: ReviewPayload, user: dict = Depends(get_current_user)):
    if not 1 <= payload.rating <= 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")
    if not payload.comment.strip():
        raise HTTPException(status_code=400, detail="Missing required fields")
    product = get_product_or_404(payload.product_id)
    reviews = product.get("reviews", [])
    if any(r.get("user_id") == user["_id"] for r in reviews):
        raise HTTPException(status_code=409, detail="You have already reviewed this product")

    reviews.append({
        "id": str(ObjectId()),
        "user_id": user["_id"],
        "user_name": user["name"],
        "rating": payload.rating,
        "comment": payload.comment.strip(),
        "created_at": datetime.now(timezone.utc),
    })
    ratings = rating_fields(reviews)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"reviews": reviews, **ratings}})
    return {"success": True, "message": "Review added successfully", **ratings}


@app.get("/api/product/reviews/all")
def all_reviews(admin: dict = Depends(require_permission("products"))):
    entries = []
    for product in db["product"].find({"total_reviews": {"$gt": 0}}):
        images = product.get("image") or []
        for review in product.get("reviews", []):
            entries.append({
                **review,
                "product_id": str(product["_id"]),
                "product_name": product.get("name"),
                "product_image": images[0] if images else None,
            })
    entries.sort(key=lambda r: as_utc(r.get("created_at")) or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
    return {"success": True, "reviews": entries}


@app.get("/api/product/{product_id}")
def get_product(product_id: str):
    return {"success": True, "product": serialize(get_product_or_404(product_id))}


@app.put("/api/product/{product_id}")
async def update_product(product_id: str, request: Request, admin: dict = Depends(require_permission("products"))):
    product = get_product_or_404(product_id)
    form = await request.form()
    updates = product_fields(form)

    if form.get("colors") is not None:
        try:
            colors = parse_colors(form["colors"])
        except CatalogError as e:
            raise HTTPException(status_code=400, detail=str(e))
        new_images = {i: await upload_form_images(form, f"color_images_{i}") for i in range(len(colors))}
        updates["colors"] = merge_color_images(colors, new_images)

    main_images = await upload_form_images(form, "image")
    if main_images:
        updates["image"] = main_images

    merged = {k: v for k, v in product.items() if k not in ("_id", "created_at", "updated_at")}
    merged.update(updates)
    try:
        Product(**merged)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False, include_input=False))

    updates["updated_at"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": product["_id"]}, {"$set": updates})
    updated = db["product"].find_one({"_id": product["_id"]})
    return {"success": True, "message": "Product updated successfully", "product": serialize(updated)}


@app.get("/api/product/{product_id}/reviews")
def product_reviews(product_id: str):
    product = get_product_or_404(product_id)
    reviews = sorted(product.get("reviews", []),
                     key=lambda r: as_utc(r.get("created_at")) or datetime.min.replace(tzinfo=timezone.utc),
                     reverse=True)
    return {
        "success": True,
        "reviews": reviews,
        "average_rating": product.get("average_rating", 0),
        "total_reviews": product.get("total_reviews", 0),
    }


@app.delete("/api/product/{product_id}/reviews/{review_id}")
def delete_review(product_id: str, review_id: str, admin: dict = Depends(require_permission("products"))):
    product = get_product_or_404(product_id)
    reviews = [r for r in product.get("reviews", []) if r.get("id") != review_id]
    if len(reviews) == len(product.get("reviews", [])):
        raise HTTPException(status_code=404, detail="Review not found")
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"reviews": reviews, **rating_fields(reviews)}})
    return {"success": True, "message": "Review deleted successfully"}


@app.post("/api/product/{product_id}/photos")
def add_user_photo(product_id: str, photo: UploadFile = File(...), user: dict = Depends(get_current_user)):
    product = get_product_or_404(product_id)
    url = store_image(photo.file, "user-photos")
    entry = {"image_url": url, "user_id": user["_id"], "upload_date": datetime.now(timezone.utc)}
    db["product"].update_one({"_id": product["_id"]}, {"$push": {"user_photos": entry}})
    photos = product.get("user_photos", []) + [entry]
    return {"success": True, "message": "Photo uploaded successfully", "user_photos": photos, "uploaded_photo": url}


@app.get("/api/product/{product_id}/photos")
def get_user_photos(product_id: str):
    product = get_product_or_404(product_id)
    return {"success": True, "user_photos": product.get("user_photos", [])}


# ----------------------- Cart -----------------------
class CartAddPayload(BaseModel):
    item_id: str
    size: Optional[str] = None
    color: Optional[str] = None


class CartUpdatePayload(CartAddPayload):
    quantity: int


@app.get("/api/cart")
def get_cart(user: dict = Depends(get_current_user)):
    return {"success": True, "cart_data": user.get("cart_data") or {}}


@app.post("/api/cart/add")
def add_to_cart(payload: CartAddPayload, user: dict = Depends(get_current_user)):
    product = get_product_or_404(payload.item_id)
    try:
        cart = add_item(user.get("cart_data") or {}, product, payload.size or NO_SIZE, payload.color)
    except CartError as e:
        raise HTTPException(status_code=409, detail=str(e))
    save_cart(user["_id"], cart)
    return {"success": True, "message": "Added to cart", "cart_data": cart}


@app.post("/api/cart/update")
def update_cart(payload: CartUpdatePayload, user: dict = Depends(get_current_user)):
    product = get_product_or_404(payload.item_id)
    try:
        cart = set_quantity(user.get("cart_data") or {}, product, payload.size or NO_SIZE, payload.quantity, payload.color)
    except CartError as e:
        raise HTTPException(status_code=409, detail=str(e))
    save_cart(user["_id"], cart)
    return {"success": True, "message": "Cart updated", "cart_data": cart}


@app.get("/api/cart/validate")
def validate_cart(user: dict = Depends(get_current_user)):
    cart = user.get("cart_data") or {}
    reconciled, adjustments = reconcile(cart, products_for_cart(cart))
    if adjustments:
        save_cart(user["_id"], reconciled)
    return {"success": True, "valid": not adjustments, "cart_data": reconciled, "adjustments": adjustments}


# ----------------------- Orders -----------------------
class ShippingChoice(BaseModel):
    method: str = "sea"
    country: str = "china"


class PlaceOrderPayload(BaseModel):
    address: Dict[str, Any]
    shipping: ShippingChoice = ShippingChoice()


class OrderStatusPayload(BaseModel):
    order_id: str
    status: str


def build_order(user: dict, address: Dict[str, Any], choice: ShippingChoice, payment_method: str) -> Order:
    """Turn the user's cart into an order priced from current catalog data."""
    cart = user.get("cart_data") or {}
    products = products_for_cart(cart)
    _, adjustments = reconcile(cart, products)
    if adjustments:
        raise HTTPException(status_code=409, detail={"message": "Some items are no longer available",
                                                     "adjustments": adjustments})
    items = order_lines(cart, products)
    if not items:
        raise HTTPException(status_code=400, detail="Cart is empty")

    weight = round(sum(i["weight"] * i["quantity"] for i in items), 3)
    try:
        cost = calculate_shipping(weight, choice.country, choice.method)
    except ShippingError as e:
        raise HTTPException(status_code=400, detail=str(e))
    subtotal = cart_amount(cart, products)
    return Order(
        user_id=user["_id"],
        items=items,
        amount=round(subtotal + cost, 2),
        address=address,
        payment_method=payment_method,
        date=datetime.now(timezone.utc),
        shipping=Shipping(method=choice.method.lower(), cost=cost, weight=weight, country=choice.country.lower()),
    )


@app.get("/api/order/shipping-options")
def get_shipping_options():
    return {"success": True, "options": shipping_options()}


@app.post("/api/order/place")
def place_order(payload: PlaceOrderPayload, user: dict = Depends(get_current_user)):
    order = build_order(user, payload.address, payload.shipping, "COD")
    order_id = create_document("order", order)
    save_cart(user["_id"], {})
    return {"success": True, "message": "Order placed", "order_id": order_id, "amount": order.amount}


@app.post("/api/order/userorders")
def user_orders(user: dict = Depends(get_current_user)):
    orders = db["order"].find({"user_id": user["_id"]}).sort("date", -1)
    return {"success": True, "orders": [serialize(o) for o in orders]}


@app.get("/api/order/list")
def list_orders(admin: dict = Depends(require_permission("orders"))):
    orders = get_documents("order")
    orders.sort(key=lambda o: as_utc(o.get("date")) or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
    return {"success": True, "orders": [serialize(o) for o in orders]}


@app.post("/api/order/status")
def update_order_status(payload: OrderStatusPayload, admin: dict = Depends(require_permission("orders"))):
    res = db["order"].update_one(
        {"_id": to_object_id(payload.order_id)},
        {"$set": {"status": payload.status}, "$currentDate": {"updated_at": True}},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "message": "Status updated"}


@app.get("/api/admin/dashboard")
def admin_dashboard(admin: dict = Depends(require_permission("dashboard"))):
    paid = list(db["order"].find({"payment": True}))
    monthly: Dict[str, float] = {}
    for order in paid:
        if order.get("date"):
            key = as_utc(order["date"]).strftime("%Y-%m")
            monthly[key] = monthly.get(key, 0) + order.get("amount", 0)
    return {
        "success": True,
        "stats": {
            "total_products": db["product"].count_documents({}),
            "total_orders": db["order"].count_documents({}),
            "total_users": db["user"].count_documents({}),
            "total_affiliates": db["affiliate"].count_documents({}),
            "total_revenue": sum(o.get("amount", 0) for o in paid),
        },
        "monthly_revenue": [{"month": m, "revenue": monthly[m]} for m in sorted(monthly)],
    }


@app.get("/api/admin/users")
def admin_list_users(admin: dict = Depends(require_permission("users"))):
    users = db["user"].find({}, {"name": 1, "email": 1, "date": 1}).sort("date", -1)
    return {"success": True, "users": [serialize(u) for u in users]}


@app.get("/api/admin/users/{user_id}/stats")
def admin_user_stats(user_id: str, admin: dict = Depends(require_permission("users"))):
    if not db["user"].find_one({"_id": to_object_id(user_id)}):
        raise HTTPException(status_code=404, detail="User not found")
    orders = list(db["order"].find({"user_id": user_id}))
    paid = [o for o in orders if o.get("payment")]
    paid_dates = [as_utc(o["date"]) for o in paid if o.get("date")]
    return {
        "success": True,
        "stats": {
            "total_orders": len(orders),
            "total_spent": sum(o.get("amount", 0) for o in paid),
            "last_order_date": max(paid_dates) if paid_dates else None,
        },
    }


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: str, admin: dict = Depends(require_permission("users"))):
    oid = to_object_id(user_id)
    if not db["user"].find_one({"_id": oid}):
        raise HTTPException(status_code=404, detail="User not found")
    removed = db["order"].delete_many({"user_id": user_id}).deleted_count
    db["user"].delete_one({"_id": oid})
    logger.info("Admin %s deleted user %s and %s orders", admin["_id"], user_id, removed)
    return {"success": True, "message": "User account and associated data deleted successfully"}


# ----------------------- MeSomb payments -----------------------
class MobilePaymentPayload(BaseModel):
    phone_number: str
    service: str
    address: Dict[str, Any]
    shipping: ShippingChoice = ShippingChoice()


def payment_error(e: payments.PaymentError) -> HTTPException:
    status = {"configuration": 503, "validation": 400, "payment_failed": 402, "gateway_error": 502}
    return HTTPException(status_code=status.get(e.error_type, 400),
                         detail={"message": e.message, "error_type": e.error_type})


@app.post("/api/mesomb/payment/mobile")
def mobile_payment(payload: MobilePaymentPayload, user: dict = Depends(get_current_user)):
    service = payload.service.upper()
    if not payments.is_supported_service(service):
        raise payment_error(payments.PaymentError("Unsupported mobile money service", "validation"))

    order = build_order(user, payload.address, payload.shipping, "Mobile Money")
    payer = payments.format_phone(payload.phone_number)
    address = payload.address
    customer = {
        "email": address.get("email") or user.get("email"),
        "first_name": address.get("first_name"),
        "last_name": address.get("last_name"),
        "town": address.get("city"),
        "region": address.get("state"),
        "country": address.get("country"),
        "phone": payer,
    }
    customer = {k: v for k, v in customer.items() if v}
    line_items = [
        {"quantity": i.quantity, "unit_amount": i.price, "currency": "XAF", "product_data": {"name": i.name}}
        for i in order.items
    ]

    logger.info("Processing MeSomb payment of %s XAF for user %s via %s", order.amount, user["_id"], service)
    try:
        result = payments.gateway.collect(round(order.amount), service, payer, customer, line_items)
    except payments.PaymentError as e:
        raise payment_error(e)
    if not result.success:
        logger.warning("MeSomb payment failed for user %s: %s", user["_id"], result.message)
        raise payment_error(payments.PaymentError(result.message or "Payment failed. Please try again.", "payment_failed"))

    order.payment = True
    order.transaction_id = result.transaction_id or f"mesomb-{int(datetime.now().timestamp() * 1000)}"
    order.payment_details = {
        "service": service,
        "phone_number": payer,
        "mesomb_transaction_id": result.transaction_id,
        "mesomb_reference": result.reference,
    }
    order_id = create_document("order", order)

    # best-effort, a failure is logged inside
    track_purchase(user["_id"], order_id, order.amount)
    save_cart(user["_id"], {})

    return {
        "success": True,
        "message": "Payment successful! Your order has been placed.",
        "order_id": order_id,
        "transaction_id": order.transaction_id,
    }


@app.get("/api/mesomb/payment/verify/{transaction_id}")
def verify_payment(transaction_id: str, user: dict = Depends(get_current_user)):
    order = db["order"].find_one({"transaction_id": transaction_id, "user_id": user["_id"]})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    try:
        status = payments.gateway.status(transaction_id)
    except payments.PaymentError as e:
        raise payment_error(e)
    return {
        "success": True,
        "order": {
            "id": str(order["_id"]),
            "status": order.get("status"),
            "amount": order.get("amount"),
            "payment_status": "Paid" if order.get("payment") else "Pending",
        },
        "mesomb_status": status,
    }


@app.get("/api/mesomb/services")
def supported_services():
    return {"success": True, "services": payments.SUPPORTED_SERVICES}


# ----------------------- Affiliates -----------------------
class AffiliateStatusPayload(BaseModel):
    status: str
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None


def affiliate_link(code: str) -> str:
    return f"{FRONTEND_URL}/register?ref={code}"


def referrals_since(affiliate_id: str, since: datetime) -> List[dict]:
    docs = db["referral"].find({"affiliate_id": affiliate_id})
    return [d for d in docs if d.get("created_at") and as_utc(d["created_at"]) >= since]


@app.get("/api/affiliate/validate/{code}")
def validate_affiliate_code(code: str):
    affiliate = find_active_affiliate(code)
    if not affiliate:
        raise HTTPException(status_code=404, detail="Invalid affiliate code")
    return {
        "success": True,
        "affiliate": {"code": affiliate["affiliate_code"], "name": affiliate["application_data"]["full_name"]},
    }


@app.post("/api/affiliate/track/{code}")
def track_affiliate_click(code: str, request: Request):
    referral = track_click(code, request_metadata(request))
    if not referral:
        raise HTTPException(status_code=404, detail="Invalid affiliate code")
    return {"success": True, "message": "Click tracked successfully"}


@app.post("/api/affiliate/apply")
def apply_affiliate(payload: ApplicationData, user: dict = Depends(get_current_user)):
    if db["affiliate"].find_one({"user_id": user["_id"]}):
        raise HTTPException(status_code=409, detail="You have already applied for the affiliate program")
    affiliate = Affiliate(
        user_id=user["_id"],
        affiliate_code=generate_affiliate_code(),
        application_data=payload,
    )
    affiliate_id = create_document("affiliate", affiliate)
    logger.info("Affiliate application %s from user %s", affiliate_id, user["_id"])
    return {
        "success": True,
        "message": "Affiliate application submitted successfully",
        "affiliate": {"id": affiliate_id, "status": affiliate.status, "affiliate_code": affiliate.affiliate_code},
    }


def get_own_affiliate(user: dict) -> dict:
    affiliate = db["affiliate"].find_one({"user_id": user["_id"]})
    if not affiliate:
        raise HTTPException(status_code=404, detail="Affiliate account not found")
    return affiliate


@app.get("/api/affiliate/dashboard")
def affiliate_dashboard(user: dict = Depends(get_current_user)):
    affiliate = get_own_affiliate(user)
    affiliate_id = str(affiliate["_id"])
    recent = db["referral"].find({"affiliate_id": affiliate_id}).sort("created_at", -1).limit(10)

    month_start = datetime.now(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    this_month = referrals_since(affiliate_id, month_start)
    return {
        "success": True,
        "data": {
            "affiliate": {
                "id": affiliate_id,
                "status": affiliate["status"],
                "affiliate_code": affiliate["affiliate_code"],
                "affiliate_link": affiliate_link(affiliate["affiliate_code"]),
                "commission_rate": affiliate.get("commission_rate"),
                "stats": affiliate.get("stats"),
                "next_payout_amount": affiliate.get("next_payout_amount", 0),
                "last_payout_date": affiliate.get("last_payout_date"),
            },
            "recent_referrals": [serialize(r) for r in recent],
            "monthly_stats": {
                "clicks": sum(1 for r in this_month if r["type"] == "click"),
                "signups": sum(1 for r in this_month if r["type"] == "signup"),
                "sales": sum(1 for r in this_month if r["type"] == "purchase"),
                "earnings": sum(r.get("commission", 0) for r in this_month if r["type"] == "purchase"),
            },
        },
    }


@app.get("/api/affiliate/stats")
def affiliate_stats(period: int = 30, user: dict = Depends(get_current_user)):
    affiliate = get_own_affiliate(user)
    since = datetime.now(timezone.utc) - timedelta(days=period)
    buckets: Dict[tuple, dict] = {}
    for r in referrals_since(str(affiliate["_id"]), since):
        key = (r["type"], as_utc(r["created_at"]).strftime("%Y-%m-%d"))
        bucket = buckets.setdefault(key, {"type": key[0], "date": key[1], "count": 0,
                                          "total_amount": 0, "total_commission": 0})
        bucket["count"] += 1
        bucket["total_amount"] += r.get("amount", 0)
        bucket["total_commission"] += r.get("commission", 0)
    stats = sorted(buckets.values(), key=lambda b: (b["date"], b["type"]))
    return {"success": True, "stats": stats}


@app.get("/api/affiliate/admin/all")
def list_affiliates(page: int = 1, limit: int = 10, status: Optional[str] = None, search: Optional[str] = None,
                    admin: dict = Depends(require_permission("affiliates"))):
    page, limit = max(page, 1), max(limit, 1)
    query: Dict[str, Any] = {}
    if status and status != "all":
        query["status"] = status
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [
            {"application_data.full_name": pattern},
            {"application_data.email": pattern},
            {"affiliate_code": pattern},
        ]
    affiliates = db["affiliate"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    total = db["affiliate"].count_documents(query)
    stats = {"total": db["affiliate"].count_documents({})}
    for s in ("pending", "approved", "rejected", "suspended"):
        stats[s] = db["affiliate"].count_documents({"status": s})
    return {
        "success": True,
        "affiliates": [serialize(a) for a in affiliates],
        "stats": stats,
        "pagination": {"current": page, "pages": -(-total // limit), "total": total},
    }


@app.put("/api/affiliate/admin/{affiliate_id}/status")
def update_affiliate_status(affiliate_id: str, payload: AffiliateStatusPayload,
                            admin: dict = Depends(require_permission("affiliates"))):
    if payload.status not in ("approved", "rejected", "suspended"):
        raise HTTPException(status_code=400, detail="Invalid status value")
    oid = to_object_id(affiliate_id)
    if not db["affiliate"].find_one({"_id": oid}):
        raise HTTPException(status_code=404, detail="Affiliate not found")

    now = datetime.now(timezone.utc)
    update: Dict[str, Any] = {"status": payload.status, "notes": payload.notes, "updated_at": now}
    if payload.status == "approved":
        update["approved_at"] = now
    elif payload.status == "rejected":
        update["rejected_at"] = now
        update["rejection_reason"] = payload.rejection_reason
    db["affiliate"].update_one({"_id": oid}, {"$set": update})
    logger.info("Affiliate %s %s by %s", affiliate_id, payload.status, admin.get("username"))
    return {
        "success": True,
        "message": f"Affiliate {payload.status} successfully",
        "affiliate": serialize(db["affiliate"].find_one({"_id": oid})),
    }


@app.post("/api/affiliate/admin/{affiliate_id}/payout")
def affiliate_payout(affiliate_id: str, admin: dict = Depends(require_permission("affiliates"))):
    try:
        paid = settle_payout(to_object_id(affiliate_id))
    except LookupError:
        raise HTTPException(status_code=404, detail="Affiliate not found")
    return {"success": True, "message": "Payout recorded", "amount": paid}


# ----------------------- Site settings -----------------------
SETTINGS_SECTIONS = {
    "currency": CurrencySetting,
    "text": SiteText,
    "hero_link": SiteLink,
    "banner_link": SiteLink,
    "legal": LegalText,
}


def default_settings() -> Settings:
    return Settings(currency=CurrencySetting(name=CURRENCY, sign=CURRENCY_SYMBOL))


def load_settings() -> dict:
    """The settings document, created with defaults on first read."""
    doc = db["settings"].find_one()
    if not doc:
        create_document("settings", default_settings())
        doc = db["settings"].find_one()
    return doc


def settings_view(doc: dict) -> dict:
    # documents written before a section existed still get its defaults
    return Settings(**{k: v for k, v in doc.items() if k in Settings.model_fields}).model_dump()


def settings_fields(form) -> dict:
    """JSON-encoded form sections into a $set document."""
    fields: Dict[str, Any] = {}
    for key, model in SETTINGS_SECTIONS.items():
        raw = form.get(key)
        if raw is None:
            continue
        try:
            fields[key] = model.model_validate_json(raw).model_dump()
        except ValidationError:
            raise HTTPException(status_code=400, detail=f"Invalid {key}")
    email = form.get("notification_email")
    if email:
        try:
            fields["notification_email"] = validate_email(email, check_deliverability=False).normalized
        except EmailNotValidError:
            raise HTTPException(status_code=400, detail="Invalid notification email")
    return fields


@app.get("/api/settings")
def get_settings():
    return {"success": True, "settings": settings_view(load_settings())}


@app.get("/api/settings/legal")
def get_legal_documents():
    doc = db["settings"].find_one() or {}
    return {"success": True, "legal": LegalText(**(doc.get("legal") or {})).model_dump()}


@app.put("/api/settings")
async def update_settings(request: Request, admin: dict = Depends(require_permission("settings"))):
    form = await request.form()
    fields = settings_fields(form)
    hero = await upload_form_images(form, "hero", folder="settings")
    if hero:
        fields["images.hero"] = hero
    banner = await upload_form_images(form, "banner", folder="settings")
    if banner:
        fields["images.banner"] = banner[0]
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")

    doc = load_settings()
    updated = db["settings"].find_one_and_update(
        {"_id": doc["_id"]},
        {"$set": fields, "$currentDate": {"updated_at": True}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Admin %s updated settings: %s", admin["_id"], ", ".join(sorted(fields)))
    return {"success": True, "settings": settings_view(updated)}


class BannerLinkPayload(BaseModel):
    link_type: Literal["product", "category"]
    product_id: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    subsubcategory: Optional[str] = None


@app.put("/api/settings/banner-link")
def update_banner_link(payload: BannerLinkPayload, admin: dict = Depends(require_permission("settings"))):
    if payload.link_type == "product":
        if not payload.product_id:
            raise HTTPException(status_code=400, detail="product_id is required")
        link = SiteLink(product_id=payload.product_id)
    else:
        if not payload.category:
            raise HTTPException(status_code=400, detail="category is required")
        link = SiteLink(category=payload.category, subcategory=payload.subcategory,
                        subsubcategory=payload.subsubcategory)

    doc = load_settings()
    updated = db["settings"].find_one_and_update(
        {"_id": doc["_id"]},
        {"$set": {"banner_link": link.model_dump()}, "$currentDate": {"updated_at": True}},
        return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "settings": settings_view(updated)}


# ----------------------- Social share meta tags -----------------------
def frontend_base_url(request: Request) -> str:
    return os.getenv("FRONTEND_URL") or str(request.base_url).rstrip("/")


def find_product(product_id: str) -> Optional[dict]:
    if not ObjectId.is_valid(product_id):
        return None
    return db["product"].find_one({"_id": ObjectId(product_id)})


@app.get("/meta/product/{product_id}", response_class=HTMLResponse)
def product_meta_page(product_id: str, request: Request):
    base_url = frontend_base_url(request)
    product = find_product(product_id)
    if not product:
        return RedirectResponse(f"{base_url}/404")
    return HTMLResponse(render_product_page(product, base_url, f"{base_url}/product/{product_id}"))


@app.get("/meta/api/product/{product_id}/meta")
def product_meta_json(product_id: str, request: Request, color: Optional[str] = None, image: Optional[str] = None):
    base_url = frontend_base_url(request)
    product = find_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    meta = product_meta(product, base_url, f"{base_url}/product/{product_id}", active_image=image, selected_color=color)
    return {"success": True, "meta_tags": meta}


@app.get("/meta/meta", response_class=HTMLResponse)
def default_meta_page(request: Request):
    return HTMLResponse(render_default_page(frontend_base_url(request)))


@app.get("/meta/validate/product/{product_id}")
def validate_product_link(product_id: str):
    product = find_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail={"success": False, "exists": False})
    images = product.get("image") or []
    return {
        "success": True,
        "exists": True,
        "product": {
            "id": str(product["_id"]),
            "name": product.get("name"),
            "price": product.get("price"),
            "image": images[0] if images else None,
        },
    }


@app.get("/meta/share/product/{product_id}")
def share_product(product_id: str, request: Request):
    base_url = frontend_base_url(request)
    if not is_bot(request.headers.get("user-agent")):
        return RedirectResponse(f"{base_url}/product/{product_id}")
    product = find_product(product_id)
    if not product:
        return RedirectResponse(f"{base_url}/404")
    return HTMLResponse(render_product_page(product, base_url, f"{base_url}/product/{product_id}"))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
