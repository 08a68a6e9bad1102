"""
Request Schemas

Pydantic models that validate checkout payloads before anything is persisted.
The shipping address is snapshotted onto the order exactly as validated here.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from errors import InvalidAddressError, InvalidCartError


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=2, description="Recipient name")
    phone: str = Field(..., min_length=10, description="Contact number")
    address_line1: str = Field(..., min_length=5)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=2)
    state: str = Field(..., min_length=2)
    pincode: str = Field(..., pattern=r"^\d{6}$", description="6 digit postal code")


class CartLine(BaseModel):
    product_id: int
    quantity: int = Field(..., ge=1)


class Cart(BaseModel):
    items: List[CartLine] = Field(..., min_length=1)


def parse_address(data):
    if isinstance(data, ShippingAddress):
        return data
    try:
        return ShippingAddress.model_validate(data or {})
    except ValidationError as e:
        raise InvalidAddressError("Invalid shipping address", fields=_error_fields(e))


def parse_cart(items):
    try:
        return Cart.model_validate({"items": items or []}).items
    except ValidationError as e:
        raise InvalidCartError("Invalid cart contents", fields=_error_fields(e))


def _error_fields(exc):
    return [".".join(str(part) for part in err["loc"]) for err in exc.errors()]
