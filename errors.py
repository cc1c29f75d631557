"""
Domain errors

Every failure a workflow can report. Routes never build these responses by
hand; main.py turns any MarketplaceError into a JSON body with the status
code and a stable machine-readable code.
"""

from typing import Optional


class MarketplaceError(Exception):
    status_code = 400
    code = "marketplace_error"
    message = "Request could not be completed"

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.message
        self.context = context
        super().__init__(self.message)

    def to_dict(self):
        body = {"detail": self.message, "code": self.code}
        if self.context:
            body.update(self.context)
        return body


# Validation errors: caller can fix the request

class ValidationFailure(MarketplaceError):
    status_code = 400


class InvalidId(ValidationFailure):
    code = "invalid_id"
    message = "Invalid id"


class InvalidQuantity(ValidationFailure):
    code = "invalid_quantity"
    message = "Quantity must be at least 1"


class InvalidDuration(ValidationFailure):
    code = "invalid_duration"
    message = "Invalid loan duration"


class EmptyCart(ValidationFailure):
    code = "empty_cart"
    message = "Cart is empty"


class InvalidListingType(ValidationFailure):
    code = "invalid_listing_type"
    message = "Listing type does not allow this operation"


class SelfLoan(ValidationFailure):
    code = "self_loan"
    message = "You cannot borrow your own book"


# Conflict errors: lost a race against another caller

class Conflict(MarketplaceError):
    status_code = 409


class InsufficientStock(Conflict):
    code = "insufficient_stock"
    message = "Listing is no longer available in the requested quantity"

    def __init__(self, listing_id: str, message: Optional[str] = None):
        super().__init__(message, listing_id=listing_id)
        self.listing_id = listing_id


class ListingInactive(Conflict):
    code = "listing_inactive"
    message = "Listing is no longer available"

    def __init__(self, listing_id: str, message: Optional[str] = None):
        super().__init__(message, listing_id=listing_id)
        self.listing_id = listing_id


class VoteConflict(Conflict):
    code = "vote_conflict"
    message = "Your vote changed while it was being recorded, please try again"


# State machine violations

class InvalidTransition(MarketplaceError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, entity: str, current: Optional[str], target: str):
        super().__init__(f"Cannot move {entity} from '{current}' to '{target}'",
                         current_status=current, target_status=target)
        self.current = current
        self.target = target


# Integrity errors: partial writes that were rolled back

class IntegrityFailure(MarketplaceError):
    status_code = 500
    code = "integrity_failure"
    message = "Something went wrong, please try again"


# Missing entities

class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"
    message = "Not found"


class ListingNotFound(NotFound):
    code = "listing_not_found"
    message = "Listing not found"


class CartItemNotFound(NotFound):
    code = "cart_item_not_found"
    message = "Cart item not found"


class OrderNotFound(NotFound):
    code = "order_not_found"
    message = "Order not found"


class LoanNotFound(NotFound):
    code = "loan_not_found"
    message = "Loan not found"


class SuggestionNotFound(NotFound):
    code = "suggestion_not_found"
    message = "Suggestion not found"


class FineNotFound(NotFound):
    code = "fine_not_found"
    message = "Fine not found"
