from typing import Optional

from pydantic import BaseModel, ConfigDict


class StartMaintenanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None
    performedBy: Optional[str] = None


class CompleteMaintenanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    findings: Optional[str] = None
    actionTaken: Optional[str] = None
    performedBy: Optional[str] = None
