from typing import Optional
from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """
    Response model for webhook processing.
    Returned with HTTP 200 whenever the payload was recorded.
    """
    status: str = Field(..., description="Processing status (success, error)")
    message: str = Field(..., description="Human-readable message")
    webhook_id: Optional[str] = Field(None, description="ID of the recorded webhook payload")
    events_received: int = Field(default=0, description="Events parsed from the payload")
    events_accepted: int = Field(default=0, description="Events handed to the interpreter")
    duplicates: int = Field(default=0, description="Events discarded as already processed")
    rejected: int = Field(default=0, description="Events rejected for a stale session token")
    errors: int = Field(default=0, description="Events whose processing failed internally")
    error_details: Optional[str] = Field(None, description="Error details if status is error")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "success",
                "message": "Webhook processed",
                "webhook_id": "665f1c2e9b1e8a0012345678",
                "events_received": 1,
                "events_accepted": 1,
                "duplicates": 0,
                "rejected": 0,
                "errors": 0,
                "error_details": None
            }
        }
