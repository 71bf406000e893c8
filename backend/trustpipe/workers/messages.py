"""Wire models for task, result and dead-letter messages.

Wire keys are camelCase (``requestId``); Python attributes are snake_case.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class TaskMessage(_WireModel):
    type: str = Field(min_length=1)
    payload: dict[str, Any]
    request_id: str = Field(alias="requestId", min_length=1)


class ResultMessage(_WireModel):
    type: str
    payload: dict[str, Any]
    request_id: str = Field(alias="requestId")


class DeadLetterMessage(_WireModel):
    topic: str
    message: Any
    error: str
    kind: str = "internal"
    attempts: int = 0
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="failedAt")
