"""
Database Schemas for the Books Marketplace

Collections:
- User: Authentication and profile
- Book / Edition: Catalog entries and their physical/digital editions
- Listing: A seller's offer of an edition, for sale or for loan
- Cart / CartItem: Pending purchases, one active cart per user
- Order: Committed purchases with their line items embedded
- Reservation: Ledger of stock held by orders and loans
- Loan / Fine: Borrowing lifecycle and late fees
- Suggestion / Vote: Community requested titles
- Review / WishlistItem: Reader feedback and saved editions
"""

from pydantic import BaseModel, Field, EmailStr, model_validator
from typing import Optional, List, Literal
from datetime import datetime

UserRole = Literal["admin", "staff", "seller", "customer"]
ListingType = Literal["sale", "loan"]
BookFormat = Literal["hardcover", "paperback", "ebook", "audiobook"]
OrderStatus = Literal["pending", "paid", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
LoanStatus = Literal["reserved", "checked_out", "returned", "overdue", "lost", "cancelled"]
SuggestionStatus = Literal["pending", "fulfilled", "rejected"]
VoteDirection = Literal["up", "down"]

# Users
class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    hashed_password: str = Field(..., description="Password hash")
    role: UserRole = Field("customer", description="User role")
    is_active: bool = Field(True, description="Is account active")

# Catalog
class Book(BaseModel):
    title: str = Field(..., max_length=300)
    description: Optional[str] = Field(None, description="Synopsis")
    authors: List[str] = Field(default_factory=list)
    category: Optional[str] = None

class Edition(BaseModel):
    book_id: str = Field(..., description="Book id")
    format: BookFormat = Field("paperback")
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    publication_date: Optional[str] = None

class Listing(BaseModel):
    seller_id: str = Field(..., description="Owner user id")
    edition_id: str = Field(..., description="Edition on offer")
    type: ListingType = Field("sale")
    price: Optional[float] = Field(None, ge=0, description="Unit price for sale listings")
    daily_fee: Optional[float] = Field(None, ge=0, description="Per day fee for loan listings")
    max_days: Optional[int] = Field(None, ge=1, description="Longest loan allowed")
    quantity: int = Field(1, ge=0, description="Units in stock")
    is_active: bool = Field(True)
    inactive_reason: Optional[Literal["sold_out", "withdrawn"]] = None

    @model_validator(mode="after")
    def check_pricing(self):
        if self.type == "sale" and self.price is None:
            raise ValueError("Sale listings require a price")
        if self.type == "loan" and self.daily_fee is None:
            raise ValueError("Loan listings require a daily fee")
        return self

# Cart
class Cart(BaseModel):
    user_id: str
    is_active: bool = True

class CartItem(BaseModel):
    cart_id: str
    listing_id: str
    quantity: int = Field(1, ge=1)

# Orders
class OrderItem(BaseModel):
    id: str = Field(..., description="Line item id")
    listing_id: str
    seller_id: str
    edition_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0, description="Price captured at checkout")
    subtotal: float = Field(..., ge=0)

class Order(BaseModel):
    buyer_id: str = Field(..., description="Buyer user id")
    status: OrderStatus = Field("pending")
    payment_status: PaymentStatus = Field("pending")
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    total: float = Field(..., ge=0)

# Stock held on behalf of an order or loan
class Reservation(BaseModel):
    owner_type: Literal["order", "loan"]
    owner_id: str
    listing_id: str
    quantity: int = Field(..., ge=1)
    decremented: bool = Field(..., description="Whether listing quantity was taken")
    status: Literal["held", "released"] = "held"

# Loans
class Loan(BaseModel):
    listing_id: str
    lender_id: str
    borrower_id: str
    status: LoanStatus = Field("reserved")
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    days: int = Field(..., ge=1)
    daily_fee: float = Field(..., ge=0)
    fine_amount: float = Field(0, ge=0)

class Fine(BaseModel):
    loan_id: str
    borrower_id: str
    reason: Optional[str] = None
    amount: float = Field(..., ge=0)
    paid: bool = False

# Community suggestions
class Suggestion(BaseModel):
    title: str = Field(..., max_length=300)
    author: str = Field(..., max_length=200)
    description: Optional[str] = None
    category: Optional[str] = None
    language: Optional[str] = None
    suggested_by: str
    votes: int = 0
    status: SuggestionStatus = "pending"

class Vote(BaseModel):
    suggestion_id: str
    user_id: str
    direction: VoteDirection

# Reviews and wishlist
class Review(BaseModel):
    reviewer_id: str
    edition_id: str
    rating: int = Field(..., ge=1, le=5)
    body: Optional[str] = None

class WishlistItem(BaseModel):
    user_id: str
    edition_id: str
