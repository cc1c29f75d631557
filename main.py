import os
import logging
from typing import Optional, List, Literal

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError

import database
from database import create_document, ensure_indexes, get_documents, serialize_doc
from errors import MarketplaceError
from auth import (
    PublicUser,
    Token,
    create_access_token,
    get_current_user,
    get_db,
    get_password_hash,
    get_user_by_email,
    public_user,
    require_staff,
    verify_password,
    STAFF_ROLES,
)
from schemas import (
    User as UserSchema,
    Book as BookSchema,
    Edition as EditionSchema,
    Listing as ListingSchema,
    Order as OrderSchema,
    Loan as LoanSchema,
    Fine as FineSchema,
    Suggestion as SuggestionSchema,
    Review as ReviewSchema,
    WishlistItem as WishlistItemSchema,
    BookFormat,
    ListingType,
    VoteDirection,
)
import cart
import catalog
import inventory
import loans
import orders
import suggestions

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# App and CORS
app = FastAPI(title="Books Marketplace API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def is_staff(user: dict) -> bool:
    return user.get("role") in STAFF_ROLES


def user_id_of(user: dict) -> str:
    return str(user["_id"])


# Startup seed data
@app.on_event("startup")
def prepare_database():
    db = database.db
    if db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a database")
        return
    ensure_indexes(db)
    if db["book"].count_documents({}) == 0:
        samples = [
            (BookSchema(title="Cien años de soledad", authors=["Gabriel García Márquez"], category="Novela",
                        description="La historia de la familia Buendía en Macondo."), "paperback"),
            (BookSchema(title="Ficciones", authors=["Jorge Luis Borges"], category="Cuentos",
                        description="Laberintos, espejos y bibliotecas infinitas."), "hardcover"),
            (BookSchema(title="Rayuela", authors=["Julio Cortázar"], category="Novela",
                        description="Una novela que se puede leer en más de un orden."), "paperback"),
        ]
        for book, book_format in samples:
            book_id = create_document("book", book, database=db)
            create_document("edition", EditionSchema(book_id=book_id, format=book_format), database=db)
        logger.info("Seeded %s sample books", len(samples))


# Routes
@app.get("/")
def root():
    return {"message": "Books Marketplace Backend is running"}

@app.get("/schema")
def get_schema():
    return {
        "user": UserSchema.model_json_schema(),
        "book": BookSchema.model_json_schema(),
        "edition": EditionSchema.model_json_schema(),
        "listing": ListingSchema.model_json_schema(),
        "order": OrderSchema.model_json_schema(),
        "loan": LoanSchema.model_json_schema(),
        "fine": FineSchema.model_json_schema(),
        "suggestion": SuggestionSchema.model_json_schema(),
        "review": ReviewSchema.model_json_schema(),
        "wishlist_item": WishlistItemSchema.model_json_schema(),
    }

# Auth
class RegisterPayload(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["customer", "seller"] = "customer"


@app.post("/auth/register", response_model=PublicUser, status_code=201)
def register(payload: RegisterPayload, db=Depends(get_db)):
    if get_user_by_email(db, payload.email):
        raise HTTPException(status_code=400, detail="Email already registered")

    user_data = UserSchema(
        name=payload.name,
        email=payload.email,
        hashed_password=get_password_hash(payload.password),
        role=payload.role,
        is_active=True,
    )
    try:
        user_id = create_document("user", user_data, database=db)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    created = db["user"].find_one({"_id": database.to_object_id(user_id)})
    return public_user(created)


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    user = get_user_by_email(db, form_data.username)
    if not user or not verify_password(form_data.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=400, detail="Incorrect email or password")

    return Token(access_token=create_access_token(data={"sub": user["email"]}))


@app.get("/auth/me", response_model=PublicUser)
def me(current_user: dict = Depends(get_current_user)):
    return public_user(current_user)

# Catalog
class BookCreate(BaseModel):
    title: str
    description: Optional[str] = None
    authors: List[str] = []
    category: Optional[str] = None


class EditionCreate(BaseModel):
    format: BookFormat = "paperback"
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    publication_date: Optional[str] = None


@app.get("/books")
def list_books(q: Optional[str] = None, category: Optional[str] = None, db=Depends(get_db)):
    return [serialize_doc(b) for b in catalog.list_books(db, q=q, category=category)]


@app.post("/books", status_code=201)
def create_book(payload: BookCreate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(catalog.create_book(db, **payload.model_dump()))


@app.post("/books/{book_id}/editions", status_code=201)
def create_edition(book_id: str, payload: EditionCreate, current_user: dict = Depends(get_current_user),
                   db=Depends(get_db)):
    return serialize_doc(catalog.create_edition(db, book_id, **payload.model_dump()))

# Listings
class ListingCreate(BaseModel):
    edition_id: str
    type: ListingType = "sale"
    price: Optional[float] = None
    daily_fee: Optional[float] = None
    max_days: Optional[int] = None
    quantity: int = 1


class RestockPayload(BaseModel):
    quantity: int


def owned_listing(db, listing_id: str, current_user: dict) -> dict:
    listing = inventory.get_listing(db, listing_id)
    if listing["seller_id"] != user_id_of(current_user) and not is_staff(current_user):
        raise HTTPException(status_code=403, detail="Not your listing")
    return listing


@app.get("/listings")
def list_listings(q: Optional[str] = None, type: Optional[ListingType] = None, seller_id: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None, db=Depends(get_db)):
    found = catalog.browse_listings(db, q=q, listing_type=type, seller_id=seller_id,
                                    min_price=min_price, max_price=max_price)
    return [serialize_doc(item) for item in found]


@app.get("/listings/{listing_id}")
def get_listing(listing_id: str, db=Depends(get_db)):
    return serialize_doc(catalog.get_listing_detail(db, listing_id))


@app.post("/listings", status_code=201)
def create_listing(payload: ListingCreate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    listing = catalog.create_listing(db, user_id_of(current_user), **payload.model_dump())
    return serialize_doc(listing)


@app.post("/listings/{listing_id}/deactivate")
def deactivate_listing(listing_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    owned_listing(db, listing_id, current_user)
    return serialize_doc(inventory.deactivate(db, listing_id))


@app.post("/listings/{listing_id}/restock")
def restock_listing(listing_id: str, payload: RestockPayload, current_user: dict = Depends(get_current_user),
                    db=Depends(get_db)):
    owned_listing(db, listing_id, current_user)
    return serialize_doc(inventory.restock(db, listing_id, payload.quantity))

# Cart
class CartItemCreate(BaseModel):
    listing_id: str
    quantity: int = 1


class CartItemUpdate(BaseModel):
    quantity: int


def cart_response(view: dict):
    return {
        "cart": serialize_doc(view["cart"]),
        "items": [serialize_doc(i) for i in view["items"]],
        "total": view["total"],
    }


@app.get("/cart")
def get_cart(current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return cart_response(cart.get_active_cart(db, user_id_of(current_user)))


@app.post("/cart/items", status_code=201)
def add_cart_item(payload: CartItemCreate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(cart.add_item(db, user_id_of(current_user), payload.listing_id, payload.quantity))


@app.patch("/cart/items/{item_id}")
def update_cart_item(item_id: str, payload: CartItemUpdate, current_user: dict = Depends(get_current_user),
                     db=Depends(get_db)):
    return serialize_doc(cart.update_quantity(db, user_id_of(current_user), item_id, payload.quantity))


@app.delete("/cart/items/{item_id}")
def delete_cart_item(item_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    cart.remove_item(db, user_id_of(current_user), item_id)
    return {"deleted": True}

# Orders
class PaymentUpdate(BaseModel):
    outcome: Literal["paid", "failed"]


class OrderStatusUpdate(BaseModel):
    status: Literal["paid", "shipped", "delivered", "cancelled"]


def visible_order(db, order_id: str, current_user: dict) -> dict:
    order = orders.get_order(db, order_id)
    me_id = user_id_of(current_user)
    sellers = {item["seller_id"] for item in order.get("items", [])}
    if order["buyer_id"] != me_id and me_id not in sellers and not is_staff(current_user):
        raise HTTPException(status_code=403, detail="Not your order")
    return order


@app.post("/checkout", status_code=201)
def checkout(current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(orders.checkout(db, user_id_of(current_user)))


@app.get("/orders")
def my_orders(current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return [serialize_doc(o) for o in orders.list_orders(db, buyer_id=user_id_of(current_user))]


@app.get("/orders/sales")
def my_sales(current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return [serialize_doc(o) for o in orders.list_orders(db, seller_id=user_id_of(current_user))]


@app.get("/orders/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(visible_order(db, order_id, current_user))


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    order = visible_order(db, order_id, current_user)
    if order["buyer_id"] != user_id_of(current_user) and not is_staff(current_user):
        raise HTTPException(status_code=403, detail="Only the buyer can cancel")
    if order["status"] != "pending" and not is_staff(current_user):
        raise HTTPException(status_code=400, detail="Only pending orders can be cancelled")
    return serialize_doc(orders.transition(db, order_id, "cancelled"))

# Loans
class LoanCreate(BaseModel):
    listing_id: str
    days: int


def loan_party(db, loan_id: str, current_user: dict, lender_only: bool = False) -> dict:
    loan = loans.get_loan(db, loan_id)
    me_id = user_id_of(current_user)
    allowed = {loan["lender_id"]} if lender_only else {loan["lender_id"], loan["borrower_id"]}
    if me_id not in allowed and not is_staff(current_user):
        raise HTTPException(status_code=403, detail="Not your loan")
    return loan


@app.post("/loans", status_code=201)
def request_loan(payload: LoanCreate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(loans.request_loan(db, user_id_of(current_user), payload.listing_id, payload.days))


@app.get("/loans")
def my_loans(role: Literal["borrower", "lender"] = "borrower", status: Optional[str] = None,
             current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    me_id = user_id_of(current_user)
    if role == "lender":
        found = loans.list_loans(db, lender_id=me_id, status=status)
    else:
        found = loans.list_loans(db, borrower_id=me_id, status=status)
    return [serialize_doc(l) for l in found]


@app.post("/loans/{loan_id}/checkout")
def check_out_loan(loan_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    loan_party(db, loan_id, current_user, lender_only=True)
    return serialize_doc(loans.check_out(db, loan_id))


@app.post("/loans/{loan_id}/return")
def return_loan(loan_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    loan_party(db, loan_id, current_user, lender_only=True)
    return serialize_doc(loans.return_loan(db, loan_id))


@app.post("/loans/{loan_id}/lost")
def mark_loan_lost(loan_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    loan_party(db, loan_id, current_user, lender_only=True)
    return serialize_doc(loans.mark_lost(db, loan_id))


@app.post("/loans/{loan_id}/cancel")
def cancel_loan(loan_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    loan_party(db, loan_id, current_user)
    return serialize_doc(loans.cancel_loan(db, loan_id))


@app.get("/fines")
def my_fines(unpaid: bool = False, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return [serialize_doc(f) for f in loans.list_fines(db, user_id_of(current_user), unpaid_only=unpaid)]


@app.post("/fines/{fine_id}/pay")
def pay_fine(fine_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(loans.pay_fine(db, fine_id, user_id_of(current_user)))

# Suggestions
class SuggestionCreate(BaseModel):
    title: str
    author: str
    description: Optional[str] = None
    category: Optional[str] = None
    language: Optional[str] = None


class VotePayload(BaseModel):
    direction: VoteDirection


@app.get("/suggestions")
def list_suggestions(status: Literal["pending", "fulfilled", "rejected"] = "pending", db=Depends(get_db)):
    return [serialize_doc(s) for s in suggestions.list_suggestions(db, status=status)]


@app.post("/suggestions", status_code=201)
def create_suggestion(payload: SuggestionCreate, current_user: dict = Depends(get_current_user),
                      db=Depends(get_db)):
    created = suggestions.create_suggestion(db, user_id_of(current_user), **payload.model_dump())
    return serialize_doc(created)


@app.post("/suggestions/{suggestion_id}/vote")
def vote_suggestion(suggestion_id: str, payload: VotePayload, current_user: dict = Depends(get_current_user),
                    db=Depends(get_db)):
    me_id = user_id_of(current_user)
    updated = suggestions.vote(db, suggestion_id, me_id, payload.direction)
    result = serialize_doc(updated)
    result["my_vote"] = suggestions.user_vote(db, suggestion_id, me_id)
    return result

# Reviews
class ReviewCreate(BaseModel):
    edition_id: str
    rating: int
    body: Optional[str] = None


@app.post("/reviews", status_code=201)
def add_review(payload: ReviewCreate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    review = catalog.add_review(db, user_id_of(current_user), payload.edition_id, payload.rating, payload.body)
    return serialize_doc(review)


@app.get("/reviews/{edition_id}")
def list_reviews(edition_id: str, db=Depends(get_db)):
    return [serialize_doc(r) for r in catalog.list_reviews(db, edition_id)]

# Wishlist
class WishlistAdd(BaseModel):
    edition_id: str


@app.get("/wishlist")
def my_wishlist(current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return [serialize_doc(w) for w in catalog.list_wishlist(db, user_id_of(current_user))]


@app.post("/wishlist", status_code=201)
def add_to_wishlist(payload: WishlistAdd, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(catalog.add_to_wishlist(db, user_id_of(current_user), payload.edition_id))


@app.delete("/wishlist/{edition_id}")
def remove_from_wishlist(edition_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    catalog.remove_from_wishlist(db, user_id_of(current_user), edition_id)
    return {"deleted": True}

# Admin back-office
class SuggestionStatusUpdate(BaseModel):
    status: Literal["fulfilled", "rejected"]


@app.get("/admin/orders")
def admin_orders(status: Optional[str] = None, staff: dict = Depends(require_staff), db=Depends(get_db)):
    return [serialize_doc(o) for o in orders.list_orders(db, status=status)]


@app.patch("/admin/orders/{order_id}")
def admin_update_order(order_id: str, payload: OrderStatusUpdate, staff: dict = Depends(require_staff),
                       db=Depends(get_db)):
    return serialize_doc(orders.transition(db, order_id, payload.status))


@app.post("/admin/orders/{order_id}/payment")
def admin_record_payment(order_id: str, payload: PaymentUpdate, staff: dict = Depends(require_staff),
                         db=Depends(get_db)):
    return serialize_doc(orders.record_payment(db, order_id, payload.outcome))


@app.get("/admin/users", response_model=List[PublicUser])
def admin_users(staff: dict = Depends(require_staff), db=Depends(get_db)):
    return [public_user(u) for u in get_documents("user", {}, 200, database=db)]


@app.post("/admin/loans/sweep")
def admin_sweep_loans(staff: dict = Depends(require_staff), db=Depends(get_db)):
    flagged = loans.sweep_overdue(db)
    return {"overdue": flagged, "count": len(flagged)}


@app.patch("/admin/suggestions/{suggestion_id}")
def admin_update_suggestion(suggestion_id: str, payload: SuggestionStatusUpdate,
                            staff: dict = Depends(require_staff), db=Depends(get_db)):
    return serialize_doc(suggestions.set_status(db, suggestion_id, payload.status))


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
        from database import db as _db
        if _db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = _db.name if hasattr(_db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                response["collections"] = _db.list_collection_names()[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
