"""Assignment request/response schemas."""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime


class AssignmentRequest(BaseModel):
    """Request a (sticky) variant for a subject."""

    subjectId: Optional[str] = Field(None, max_length=200, description="Stable subject identifier")
    orgId: Optional[str] = Field(None, description="Organization scope (optional)")
    context: Dict[str, Any] = Field(default_factory=dict, description="Opaque context stored with a new assignment")

    class Config:
        json_schema_extra = {
            "example": {
                "subjectId": "user_123",
                "context": {"page": "/checkout"}
            }
        }


class WinnerInfo(BaseModel):
    """Current winner state embedded in assignment responses."""

    status: str
    winner_variant_key: Optional[str] = None
    decided_at: Optional[datetime] = None
    reason: Optional[str] = None


class AssignmentResponse(BaseModel):
    """Variant assigned to a subject."""

    experiment_code: str
    variant_key: str
    assigned_at: datetime
    config_slug: Optional[str] = None
    winner: WinnerInfo

    class Config:
        json_schema_extra = {
            "example": {
                "experiment_code": "checkout-cta",
                "variant_key": "a",
                "assigned_at": "2024-01-15T10:00:00",
                "config_slug": "checkout-cta-a",
                "winner": {
                    "status": "running",
                    "winner_variant_key": None,
                    "decided_at": None,
                    "reason": None
                }
            }
        }
