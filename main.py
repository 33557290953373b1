import logging
import os
import re
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from bson.objectid import ObjectId

import database
import orders
from database import create_document, get_db, get_documents, populate, serialize_doc, to_object_id
from errors import (
    CreationError,
    NotFoundError,
    ResolutionError,
    ShopError,
    StoreUnavailableError,
    ValidationError,
)
from schemas import Category as CategorySchema, Product as ProductSchema, User as UserSchema, is_cent_precise

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("shop")

API_URL = os.getenv("API_URL", "/api/v1")
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "public/uploads")

app = FastAPI(title="E-commerce Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount("/public/uploads", StaticFiles(directory=UPLOAD_DIR, check_dir=False), name="uploads")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - started) * 1000
    logger.info("%s %s %s - %.1f ms", request.method, request.url.path, response.status_code, elapsed)
    return response


ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ResolutionError: 400,
    CreationError: 400,
    StoreUnavailableError: 503,
}


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    status_code = ERROR_STATUS.get(type(exc), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"success": False, "message": str(exc)})


# ----------------------- Utils -----------------------
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
security = HTTPBearer(auto_error=False)

FILE_TYPE_MAP = {
    "image/png": "png",
    "image/jpeg": "jpeg",
    "image/jpg": "jpg",
}


def hash_password(password: str) -> str:
    import hashlib
    return hashlib.sha256(password.encode()).hexdigest()


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=1)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def require_admin(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security), db=Depends(get_db)):
    if credentials is None:
        raise HTTPException(status_code=401, detail="The user is not authorized")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not isinstance(user_id, str) or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin only")
    return serialize_doc(user)


def save_upload(file: UploadFile) -> str:
    """Write an uploaded image to UPLOAD_DIR and return the stored file name."""
    extension = FILE_TYPE_MAP.get(file.content_type)
    if not extension:
        raise HTTPException(status_code=400, detail="Invalid image type")
    stem = os.path.splitext(os.path.basename(file.filename or "image"))[0]
    stem = re.sub(r"[^A-Za-z0-9_-]+", "-", stem).strip("-") or "image"
    file_name = f"{stem}-{int(time.time() * 1000)}.{extension}"
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    with open(os.path.join(UPLOAD_DIR, file_name), "wb") as out:
        out.write(file.file.read())
    return file_name


def upload_url(request: Request, file_name: str) -> str:
    return f"{request.base_url}public/uploads/{file_name}"


def check_price(price):
    if price is not None and not is_cent_precise(price):
        raise HTTPException(status_code=400, detail="price must have at most 2 decimal places")


def require_category(db, category_id: str):
    category = db["category"].find_one({"_id": to_object_id(category_id)})
    if not category:
        raise HTTPException(status_code=400, detail="Invalid Category!")
    return category


def ensure_unique_email(db, email: str, user_id=None):
    existing = db["user"].find_one({"email": email})
    if existing and existing["_id"] != user_id:
        raise HTTPException(status_code=400, detail="Email already registered")


# ----------------------- Models -----------------------
class CategoryBody(CategorySchema):
    pass


class RegisterBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=1)
    phone: str
    street: str = ""
    apartment: str = ""
    zip: str = ""
    city: str = ""
    country: str = ""


class UserCreateBody(RegisterBody):
    is_admin: bool = False


class UserUpdateBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    phone: Optional[str] = None
    is_admin: Optional[bool] = None
    street: Optional[str] = None
    apartment: Optional[str] = None
    zip: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class OrderItemBody(BaseModel):
    quantity: int = Field(..., ge=1)
    product: str


class OrderCreateBody(BaseModel):
    order_items: List[OrderItemBody] = []
    shipping_address1: str
    shipping_address2: Optional[str] = None
    city: str
    zip: str
    country: str
    phone: str
    user: str


class StatusBody(BaseModel):
    status: str


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "E-commerce API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


api = APIRouter(prefix=API_URL)


# ----------------------- Categories -----------------------
@api.get("/categories")
def list_categories(db=Depends(get_db)):
    return [serialize_doc(c) for c in get_documents(db, "category")]


@api.get("/categories/{category_id}")
def get_category(category_id: str, db=Depends(get_db)):
    category = db["category"].find_one({"_id": to_object_id(category_id)})
    if not category:
        raise HTTPException(status_code=404, detail="Category not found!")
    return serialize_doc(category)


@api.post("/categories")
def create_category(body: CategoryBody, admin=Depends(require_admin), db=Depends(get_db)):
    cid = create_document(db, "category", body)
    return serialize_doc(db["category"].find_one({"_id": cid}))


@api.put("/categories/{category_id}")
def update_category(category_id: str, body: CategoryBody, admin=Depends(require_admin), db=Depends(get_db)):
    update = body.model_dump()
    update["updated_at"] = datetime.now(timezone.utc)
    updated = db["category"].find_one_and_update(
        {"_id": to_object_id(category_id)}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Category not found!")
    return serialize_doc(updated)


@api.delete("/categories/{category_id}")
def delete_category(category_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    res = db["category"].delete_one({"_id": to_object_id(category_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Category not found!")
    return {"success": True, "message": "The category is deleted!"}


# ----------------------- Products -----------------------
@api.get("/products")
def list_products(categories: Optional[str] = None, db=Depends(get_db)):
    filt = {}
    if categories:
        filt["category"] = {"$in": [to_object_id(c.strip()) for c in categories.split(",") if c.strip()]}
    items = get_documents(db, "product", filt)
    return [serialize_doc(populate(db, i, "category", "category")) for i in items]


@api.get("/products/get/count")
def product_count(db=Depends(get_db)):
    return {"product_count": db["product"].count_documents({})}


@api.get("/products/get/featured/{count}")
def featured_products(count: int, db=Depends(get_db)):
    if count < 0:
        raise HTTPException(status_code=400, detail="count must not be negative")
    if count == 0:
        return {"featured_products": []}
    items = get_documents(db, "product", {"is_featured": True}, limit=count)
    return {"featured_products": [serialize_doc(i) for i in items]}


@api.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    item = db["product"].find_one({"_id": to_object_id(product_id)})
    if not item:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(populate(db, item, "category", "category"))


@api.post("/products")
def create_product(
    request: Request,
    name: str = Form(...),
    description: str = Form(...),
    category: str = Form(...),
    count_in_stock: int = Form(..., ge=0),
    rich_description: str = Form(""),
    brand: str = Form(""),
    price: float = Form(0, ge=0),
    rating: float = Form(0),
    num_reviews: int = Form(0),
    is_featured: bool = Form(False),
    image: Optional[UploadFile] = File(None),
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    if image is None:
        raise HTTPException(status_code=400, detail="No file attached!")
    check_price(price)
    cat = require_category(db, category)
    file_name = save_upload(image)
    product = ProductSchema(
        name=name,
        description=description,
        rich_description=rich_description,
        image=upload_url(request, file_name),
        brand=brand,
        price=price,
        category=cat["_id"],
        count_in_stock=count_in_stock,
        rating=rating,
        num_reviews=num_reviews,
        is_featured=is_featured,
    )
    pid = create_document(db, "product", product)
    return serialize_doc(db["product"].find_one({"_id": pid}))


@api.put("/products/gallery-images/{product_id}")
def upload_gallery_images(
    request: Request,
    product_id: str,
    images: Optional[List[UploadFile]] = File(None),
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    images = images or []
    if len(images) > 10:
        raise HTTPException(status_code=400, detail="At most 10 images can be uploaded")
    paths = [upload_url(request, save_upload(f)) for f in images]
    updated = db["product"].find_one_and_update(
        {"_id": to_object_id(product_id)},
        {"$set": {"images": paths, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(updated)


@api.put("/products/{product_id}")
def update_product(
    request: Request,
    product_id: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    rich_description: Optional[str] = Form(None),
    brand: Optional[str] = Form(None),
    price: Optional[float] = Form(None, ge=0),
    category: Optional[str] = Form(None),
    count_in_stock: Optional[int] = Form(None, ge=0),
    rating: Optional[float] = Form(None),
    num_reviews: Optional[int] = Form(None),
    is_featured: Optional[bool] = Form(None),
    image: Optional[UploadFile] = File(None),
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    oid = to_object_id(product_id)
    if not db["product"].find_one({"_id": oid}):
        raise HTTPException(status_code=404, detail="Product not found")
    check_price(price)
    update = {
        "name": name,
        "description": description,
        "rich_description": rich_description,
        "brand": brand,
        "price": price,
        "count_in_stock": count_in_stock,
        "rating": rating,
        "num_reviews": num_reviews,
        "is_featured": is_featured,
    }
    update = {k: v for k, v in update.items() if v is not None}
    if category is not None:
        update["category"] = require_category(db, category)["_id"]
    if image is not None:
        update["image"] = upload_url(request, save_upload(image))
    update["updated_at"] = datetime.now(timezone.utc)
    updated = db["product"].find_one_and_update({"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER)
    return serialize_doc(updated)


@api.delete("/products/{product_id}")
def delete_product(product_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    res = db["product"].delete_one({"_id": to_object_id(product_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "message": "The product is deleted!"}


# ----------------------- Users -----------------------
def _insert_user(db, body: RegisterBody, is_admin: bool):
    ensure_unique_email(db, body.email)
    user = UserSchema(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
        phone=body.phone,
        is_admin=is_admin,
        street=body.street,
        apartment=body.apartment,
        zip=body.zip,
        city=body.city,
        country=body.country,
    )
    try:
        uid = create_document(db, "user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    return serialize_doc(db["user"].find_one({"_id": uid}))


@api.post("/users/login")
def login(body: LoginBody, db=Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user:
        raise HTTPException(status_code=400, detail="User not found")
    if user.get("password_hash") != hash_password(body.password):
        raise HTTPException(status_code=400, detail="Password is Wrong")
    token = create_token({"id": str(user["_id"]), "is_admin": user.get("is_admin", False)})
    return {"user": user["email"], "token": token}


@api.post("/users/register")
def register(body: RegisterBody, db=Depends(get_db)):
    return _insert_user(db, body, is_admin=False)


@api.get("/users")
def list_users(admin=Depends(require_admin), db=Depends(get_db)):
    return [serialize_doc(u) for u in db["user"].find({}, {"password_hash": 0})]


@api.get("/users/get/count")
def user_count(admin=Depends(require_admin), db=Depends(get_db)):
    return {"user_count": db["user"].count_documents({})}


@api.get("/users/{user_id}")
def get_user(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    user = db["user"].find_one({"_id": to_object_id(user_id)}, {"password_hash": 0})
    if not user:
        raise HTTPException(status_code=404, detail="User not found!")
    return serialize_doc(user)


@api.post("/users")
def create_user(body: UserCreateBody, admin=Depends(require_admin), db=Depends(get_db)):
    return _insert_user(db, body, is_admin=body.is_admin)


@api.put("/users/{user_id}")
def update_user(user_id: str, body: UserUpdateBody, admin=Depends(require_admin), db=Depends(get_db)):
    oid = to_object_id(user_id)
    if not db["user"].find_one({"_id": oid}):
        raise HTTPException(status_code=404, detail="User not found!")
    update = body.model_dump(exclude_none=True)
    password = update.pop("password", None)
    if password:
        update["password_hash"] = hash_password(password)
    if "email" in update:
        ensure_unique_email(db, update["email"], user_id=oid)
    update["updated_at"] = datetime.now(timezone.utc)
    try:
        updated = db["user"].find_one_and_update({"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    return serialize_doc(updated)


@api.delete("/users/{user_id}")
def delete_user(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    res = db["user"].delete_one({"_id": to_object_id(user_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="User not found!")
    return {"success": True, "message": "The user is removed!"}


# ----------------------- Orders -----------------------
@api.get("/orders")
def list_orders(admin=Depends(require_admin), db=Depends(get_db)):
    return serialize_doc(orders.list_orders(db))


@api.get("/orders/get/totalsales")
def total_sales(admin=Depends(require_admin), db=Depends(get_db)):
    return {"total_sales": float(orders.total_sales(db))}


@api.get("/orders/get/count")
def order_count(admin=Depends(require_admin), db=Depends(get_db)):
    return {"order_count": orders.order_count(db)}


@api.get("/orders/get/userorders/{user_id}")
def user_orders(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    return serialize_doc(orders.list_orders_for_user(db, user_id))


@api.get("/orders/{order_id}")
def get_order(order_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    return serialize_doc(orders.get_order(db, order_id))


@api.post("/orders")
def place_order(body: OrderCreateBody, admin=Depends(require_admin), db=Depends(get_db)):
    shipping = body.model_dump(exclude={"order_items", "user"})
    items = [i.model_dump() for i in body.order_items]
    return serialize_doc(orders.place_order(db, items, shipping, body.user))


@api.put("/orders/{order_id}")
def update_order_status(order_id: str, body: StatusBody, admin=Depends(require_admin), db=Depends(get_db)):
    return serialize_doc(orders.update_status(db, order_id, body.status))


@api.delete("/orders/{order_id}")
def delete_order(order_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    report = orders.delete_order(db, order_id)
    return {"success": True, "message": "The order is deleted!", **report.model_dump()}


app.include_router(api)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
