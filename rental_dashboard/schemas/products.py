from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class ProductUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    kind: Optional[Literal["trackable", "bulk"]] = None
    totalQuantity: Optional[int] = None
    dailyPrice: Optional[Decimal] = None
    replacementValue: Optional[Decimal] = None


class AssetCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    serialNumber: str
