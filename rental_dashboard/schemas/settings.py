from typing import Optional

from pydantic import BaseModel, ConfigDict


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    businessName: Optional[str] = None
    businessCnpj: Optional[str] = None
    businessPhone: Optional[str] = None
    businessAddress: Optional[str] = None
    businessCity: Optional[str] = None
    businessState: Optional[str] = None
    signatureImage: Optional[str] = None
