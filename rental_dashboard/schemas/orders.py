from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class OrderItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    productID: int
    quantity: int = 1
    assetID: Optional[int] = None


class CreateOrderDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    customerName: str
    customerPhone: Optional[str] = None
    customerCpf: Optional[str] = None
    customerEmail: Optional[str] = None
    deliveryAddress: Optional[str] = None
    startDate: date
    endDate: date
    status: Optional[str] = None
    fulfillmentType: Literal["immediate", "reservation"] = "reservation"
    deliveryMethod: Literal["pickup", "delivery"] = "pickup"
    paymentMethod: Optional[str] = None
    notes: Optional[str] = None
    items: List[OrderItemDto] = []


class UpdateOrderDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    customerName: Optional[str] = None
    customerPhone: Optional[str] = None
    customerCpf: Optional[str] = None
    customerEmail: Optional[str] = None
    deliveryAddress: Optional[str] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    fulfillmentType: Optional[Literal["immediate", "reservation"]] = None
    deliveryMethod: Optional[Literal["pickup", "delivery"]] = None
    paymentMethod: Optional[str] = None
    notes: Optional[str] = None
    items: Optional[List[OrderItemDto]] = None


class QuoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    startDate: Optional[date] = None
    endDate: Optional[date] = None
    items: List[OrderItemDto] = []


class SignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    signatureImage: str


class PublicSignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    signatureImage: str
    agreed: bool = False
