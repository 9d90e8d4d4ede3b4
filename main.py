import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr

from cart import CartStore
from cart_sync import CartRepository, ServerCartSync
from catalog import Catalog, seed_products
from database import ensure_object_id, get_db, to_document, utcnow
from errors import NotFoundError, StoreError, UpstreamError, ValidationError
from moderation import MAX_FILE_SIZE, IncomingFile, LocalImageStore, NoteLedger, UploadLedger
from orders import OrderAssembler, OrderRepository, PaymentGateway
from roles import Role, require
from schemas import (
    CartEntryIn, CartEntryKey, CheckoutRequest, Identity, LineItem, NoteIn, NoteResolve,
    PaymentStatus, PaymentStatusUpdate, Product, ProductUpdate, StatusUpdate, UploadReview, User,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger("canvas_store")

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

app = FastAPI(title="Canvas Store API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": exc.kind})


class Token(BaseModel):
    access_token: str
    token_type: str


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def get_user_by_email(db, email: str):
    return db["user"].find_one({"email": email})


def get_user(db, user_id: str):
    try:
        return db["user"].find_one({"_id": ensure_object_id(user_id, "User")})
    except NotFoundError:
        return None


def _decode_identity(db, token: str) -> Optional[Identity]:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    user_id: str | None = payload.get("sub")
    if user_id is None:
        return None
    user = get_user(db, user_id)
    if user is None:
        return None
    # an unrecognized role is carried through and simply fails every gate
    return Identity(user_id=str(user["_id"]), role=str(user.get("role") or payload.get("role") or ""))


async def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)) -> Identity:
    identity = _decode_identity(db, token)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


async def get_optional_user(token: str | None = Depends(optional_oauth2_scheme), db=Depends(get_db)) -> Optional[Identity]:
    if not token:
        return None
    return _decode_identity(db, token)


def require_role(required: Role):
    async def dependency(current: Identity = Depends(get_current_user)) -> Identity:
        require(current.role, required)
        return current
    return dependency


def get_image_store() -> LocalImageStore:
    return LocalImageStore()


def get_payment_gateway() -> PaymentGateway:
    return PaymentGateway()


@app.get("/")
def read_root():
    return {"name": "Canvas Store API", "status": "ok"}


@app.get("/test")
def test_database():
    info = {"backend": "running", "database": "disconnected"}
    try:
        get_db().list_collection_names()
        info["database"] = "connected"
    except Exception as e:
        info["error"] = str(e)
    return info


# ---------- Auth ----------

@app.post("/auth/register")
def register(payload: RegisterRequest, db=Depends(get_db)):
    if get_user_by_email(db, payload.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(name=payload.name, email=payload.email, password_hash=get_password_hash(payload.password))
    user_dict = to_document(user)
    user_dict["cart"] = []
    user_dict["created_at"] = utcnow()
    user_dict["updated_at"] = utcnow()
    inserted_id = db["user"].insert_one(user_dict).inserted_id
    return {"_id": str(inserted_id)}


@app.post("/auth/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    user = get_user_by_email(db, form_data.username)
    if not user or not verify_password(form_data.password, user["password_hash"]):
        raise HTTPException(status_code=400, detail="Incorrect username or password")
    access_token = create_access_token(data={"sub": str(user["_id"]), "role": user.get("role", Role.user.value)})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/me")
async def me(current: Identity = Depends(get_current_user)):
    return current


# ---------- Catalog ----------

@app.get("/api/products")
def list_products(category: str | None = None, db=Depends(get_db)):
    return Catalog(db).list_products(category)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return Catalog(db).get(product_id)


@app.post("/api/products", status_code=201)
def create_product(product: Product, db=Depends(get_db), _: Identity = Depends(require_role(Role.admin))):
    return {"_id": Catalog(db).create(product)}


@app.patch("/api/products/{product_id}")
def update_product(product_id: str, changes: ProductUpdate, db=Depends(get_db),
                   _: Identity = Depends(require_role(Role.admin))):
    return Catalog(db).update(product_id, changes)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db=Depends(get_db), _: Identity = Depends(require_role(Role.admin))):
    Catalog(db).deactivate(product_id)
    return {"message": "Product deleted successfully"}


@app.post("/admin/seed")
def seed(db=Depends(get_db), _: Identity = Depends(require_role(Role.admin))):
    return {"inserted": seed_products(db)}


# ---------- Cart ----------

def _cart_view(store: CartStore) -> dict:
    return {"items": store.items, "total": store.total, "is_open": store.is_open}


@app.get("/api/cart")
def get_cart(current: Identity = Depends(get_current_user), db=Depends(get_db)):
    return {"cart": CartRepository(db).get_entries(current.user_id)}


@app.post("/api/cart")
def add_to_cart(entry: CartEntryIn, current: Identity = Depends(get_current_user), db=Depends(get_db)):
    # unknown products never make it into a persisted cart
    Catalog(db).lookup(entry.product_id, entry.variant)
    cart = CartRepository(db).add_entry(current.user_id, entry.product_id, entry.variant, entry.quantity)
    return {"cart": cart}


@app.delete("/api/cart")
def remove_from_cart(key: CartEntryKey, current: Identity = Depends(get_current_user), db=Depends(get_db)):
    return {"cart": CartRepository(db).remove_entry(current.user_id, key.product_id, key.variant)}


@app.get("/api/cart/view")
def view_cart(current: Identity = Depends(get_current_user), db=Depends(get_db)):
    store = CartStore()
    ServerCartSync(store, CartRepository(db), Catalog(db)).handle_identity(current)
    return _cart_view(store)


# ---------- Checkout / Orders ----------

def _needs_reconciliation(payment_method: str, total_minor_units: int, stage: str):
    logger.error(
        "Payment %s authorized for %d but %s; needs reconciliation",
        payment_method, total_minor_units, stage,
    )


@app.post("/api/checkout", status_code=201)
def checkout(
    payload: CheckoutRequest,
    current: Optional[Identity] = Depends(get_optional_user),
    db=Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    catalog = Catalog(db)
    store = CartStore()
    for item in payload.items:
        product = catalog.lookup(item.product_id, item.variant)
        store.add_item(LineItem(
            product_id=item.product_id,
            variant_label=item.variant,
            name=product.name,
            unit_price_minor_units=product.unit_price_minor_units,
            quantity=item.quantity,
            image_ref=product.image_ref,
        ))

    user_id = current.user_id if current else None
    order = OrderAssembler().create_order(store.snapshot(), payload.shipping_address, payload.payment_method, user_id)

    authorized = gateway.authorize(payload.payment_method, order.total_minor_units)

    repo = OrderRepository(db)
    try:
        order = repo.insert(order)
    except UpstreamError:
        if authorized:
            _needs_reconciliation(payload.payment_method, order.total_minor_units, "order was not stored")
        raise

    if authorized:
        try:
            order = repo.update_payment_status(order.id, PaymentStatus.paid)
        except StoreError:
            _needs_reconciliation(payload.payment_method, order.total_minor_units,
                                  f"order {order.id} was not marked paid")
            raise

    if current is not None:
        try:
            CartRepository(db).clear(current.user_id)
        except (UpstreamError, NotFoundError):
            logger.warning("Order %s placed but cart for %s was not cleared", order.id, current.user_id, exc_info=True)
    store.clear()

    return {
        "success": True,
        "order_id": order.id,
        "total_minor_units": order.total_minor_units,
        "status": order.status,
        "payment_status": order.payment_status,
        "message": "Order created successfully",
    }


@app.get("/api/orders")
def list_orders(status: str | None = None, limit: int = Query(50, ge=1, le=200),
                current: Identity = Depends(get_current_user), db=Depends(get_db)):
    return {"orders": OrderRepository(db).list_for(current, status=status, limit=limit)}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current: Identity = Depends(get_current_user), db=Depends(get_db)):
    return OrderRepository(db).get_for(current, order_id)


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, update: StatusUpdate, db=Depends(get_db),
                        _: Identity = Depends(require_role(Role.admin))):
    return OrderRepository(db).update_status(order_id, update.status)


@app.patch("/api/orders/{order_id}/payment-status")
def update_payment_status(order_id: str, update: PaymentStatusUpdate, db=Depends(get_db),
                          _: Identity = Depends(require_role(Role.admin))):
    return OrderRepository(db).update_payment_status(order_id, update.payment_status)


# ---------- Notes ----------

@app.get("/api/notes")
def list_notes(page: str | None = None, resolved: bool | None = None,
               current: Identity = Depends(get_current_user), db=Depends(get_db)):
    return {"notes": NoteLedger(db).list_notes(current.role, page=page, resolved=resolved)}


@app.post("/api/notes", status_code=201)
def create_note(payload: NoteIn, current: Identity = Depends(get_current_user), db=Depends(get_db)):
    note = NoteLedger(db).create_note(
        payload.content, payload.page, payload.position_x, payload.position_y, payload.color,
        author_role=current.role, author_id=current.user_id,
    )
    return {"note": note}


@app.patch("/api/notes")
def resolve_note(payload: NoteResolve, current: Identity = Depends(get_current_user), db=Depends(get_db)):
    note = NoteLedger(db).resolve_note(payload.note_id, payload.resolved, current.role, current.user_id)
    return {"note": note}


@app.delete("/api/notes")
def delete_note(note_id: str = Query(..., alias="id"), current: Identity = Depends(get_current_user), db=Depends(get_db)):
    NoteLedger(db).delete_note(note_id, current.role)
    return {"message": "Note deleted"}


# ---------- Curator uploads ----------

@app.post("/api/curator/upload", status_code=201)
async def upload_image(
    file: UploadFile = File(...),
    productId: str = Form(...),
    current: Identity = Depends(get_current_user),
    db=Depends(get_db),
    image_store: LocalImageStore = Depends(get_image_store),
):
    # gate before reading the body into memory
    require(current.role, Role.curator, "uploading images")
    if file.size is not None and file.size > MAX_FILE_SIZE:
        raise ValidationError("File size must be under 10MB")
    # one byte past the limit is enough for the ledger to refuse it
    content = await file.read(MAX_FILE_SIZE + 1)
    incoming = IncomingFile(filename=file.filename or "", content_type=file.content_type or "", content=content)
    upload = UploadLedger(db, image_store).create_upload(incoming, productId, current.role, current.user_id)
    return {"upload": upload}


@app.get("/api/curator/upload")
def list_uploads(status: str | None = None, current: Identity = Depends(get_current_user), db=Depends(get_db)):
    return {"uploads": UploadLedger(db).list_uploads(current, status=status)}


@app.patch("/api/curator/upload")
def review_upload(payload: UploadReview, current: Identity = Depends(get_current_user), db=Depends(get_db)):
    upload = UploadLedger(db).review_upload(
        payload.upload_id, payload.status, payload.review_note, current.role, current.user_id,
    )
    return {"upload": upload}


# ---------- Admin ----------

@app.get("/admin/stats")
async def admin_stats(db=Depends(get_db), _: Identity = Depends(require_role(Role.admin))):
    return {
        "users": db["user"].count_documents({}),
        "products": db["product"].count_documents({}),
        "orders": db["order"].count_documents({}),
        "notes": db["note"].count_documents({}),
        "pending_uploads": db["upload"].count_documents({"status": "pending"}),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
