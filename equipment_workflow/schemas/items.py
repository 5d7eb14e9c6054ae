from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ItemCreateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemName: str
    categoryID: Optional[int] = None
    categoryName: Optional[str] = None
    specification: Optional[str] = None
    serialNumber: Optional[str] = None
    defaultRentalDays: Optional[int] = Field(default=None, ge=1)
    requiresCalibration: bool = False
    calibrationInterval: Optional[int] = Field(default=None, ge=1)


class RetireItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None
    performedBy: Optional[str] = None
