"""Event ingestion request/response schemas."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List, Optional


class EventBatchRequest(BaseModel):
    """
    Events for one subject.

    Either a batch (``{"subjectId": ..., "events": [...]}``) or a single
    event whose fields sit at the top level of the body.
    """

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "subjectId": "user_123",
                "events": [
                    {"eventKey": "view"},
                    {"eventKey": "purchase", "value": 49.9, "ts": "2024-01-15T10:00:00Z"}
                ]
            }
        }
    )

    subjectId: Optional[str] = Field(None, max_length=200)
    orgId: Optional[str] = None
    events: Optional[List[Any]] = Field(None, max_length=1000)

    def event_list(self) -> List[Any]:
        if self.events is not None:
            return self.events
        return [dict(self.model_extra or {})]


class EventBatchResponse(BaseModel):
    """Result of an ingestion call."""

    inserted_count: int = Field(..., ge=0)
