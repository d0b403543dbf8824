from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from services.order_status import OrderStatus
from services.order_store import normalize_order_payload


class OrderItemIn(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(ge=1)
    unit_price: float = Field(ge=0)

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = normalize_order_payload({"items": [data]})["items"][0]
        return data

    @field_validator("product_id", mode="before")
    @classmethod
    def _product_id_as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class OrderCreate(BaseModel):
    user_id: int
    items: List[OrderItemIn] = Field(min_length=1)
    delivery_address: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            # New orders always start in the initial status
            data = normalize_order_payload(
                {k: v for k, v in data.items() if k not in ("status", "order_status", "orderStatus")}
            )
        return data


class OrderItemOut(BaseModel):
    id: int
    product_id: str
    name: str
    quantity: int
    unit_price: float
    total: float

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_number: str
    user_id: int
    status: OrderStatus
    rejection_reason: Optional[str] = None
    total_amount: float
    delivery_address: Dict[str, Any]
    items: List[OrderItemOut]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class OrderPage(BaseModel):
    data: List[OrderOut]
    pagination: Pagination


class RejectRequest(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def _strip_reason(cls, value: str) -> str:
        return value.strip()


class StatusUpdateRequest(BaseModel):
    status: str
    reason: Optional[str] = None
    # Optional "only if still X" guard from a client that observed the order
    expected_status: Optional[str] = None


class DashboardStats(BaseModel):
    total: int
    by_status: Dict[str, int]


class OrderStatusEvent(BaseModel):
    """Wire payload of ``order_status_update``."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: int = Field(alias="orderId")
    status: OrderStatus
    reason: Optional[str] = None
    timestamp: datetime
