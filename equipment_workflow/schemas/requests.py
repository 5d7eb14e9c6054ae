from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class SubmitRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    requestType: Literal["borrow", "calibration"]
    reason: Optional[str] = None
    userID: Optional[str] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None


class DecisionNote(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None
    approverID: Optional[str] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    calibrationDate: Optional[datetime] = None


class DecisionRequest(DecisionNote):
    decision: Literal["approve", "reject"]


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnDate: Optional[datetime] = None
    condition: Optional[str] = None
    performedBy: Optional[str] = None


class CompleteCalibrationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    result: Literal["pass", "fail"]
    certificateUrl: Optional[str] = None
    validUntil: Optional[date] = None
    notes: Optional[str] = None
    performedBy: Optional[str] = None


class SweepRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    asOf: Optional[datetime] = None
