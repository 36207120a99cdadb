from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .helpers import is_valid_email, normalize_email


class _EmailMixin(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, v: str) -> str:
        if not is_valid_email(v):
            raise ValueError("Invalid email address")
        return normalize_email(v)


class OrderCreate(_EmailMixin):
    product_id: str = Field(min_length=1)
    order_password: str = Field(min_length=6, max_length=128)
    quantity: int = Field(ge=1)


class OrderLookup(BaseModel):
    order_no: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=6, max_length=128)


class OrdersByEmail(_EmailMixin):
    password: str = Field(min_length=6, max_length=128)
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=64)


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    price: int = Field(ge=0)  # cents
    max_quantity: int = Field(default=10, ge=1, le=1000)
    status: Literal["ACTIVE", "INACTIVE"] = "ACTIVE"
    tag_id: Optional[str] = None


class CardImport(BaseModel):
    contents: List[str] = Field(min_length=1, max_length=5000)


class OrderStatusUpdate(BaseModel):
    status: Literal["PENDING", "COMPLETED", "CLOSED"]
    note: Optional[str] = Field(default=None, max_length=500)


class OrderLookupByEmail(_EmailMixin):
    password: str = Field(min_length=6, max_length=128)


class ProductUpdate(BaseModel):
    # unset fields are left alone; an explicit null tag_id clears the tag
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    price: Optional[int] = Field(default=None, ge=0)
    max_quantity: Optional[int] = Field(default=None, ge=1, le=1000)
    status: Optional[Literal["ACTIVE", "INACTIVE"]] = None
    tag_id: Optional[str] = None


class RestockSubscribe(_EmailMixin):
    product_id: str = Field(min_length=1)
