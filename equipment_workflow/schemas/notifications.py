from pydantic import BaseModel, ConfigDict


class MarkSentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notificationIDs: list[int]
