from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"


class WebhookMessageData(BaseModel):
    """
    Model for storing webhook payloads received from the messaging provider.
    The record is written before any processing so the endpoint can acknowledge delivery.
    """
    id: Optional[str] = None  # MongoDB _id
    payload: Dict[str, Any] = Field(default_factory=dict, description="Raw provider payload")
    status: WebhookStatus = Field(default=WebhookStatus.PENDING, description="Processing status: pending, processed, error")
    events_received: int = 0
    events_accepted: int = 0
    duplicates: int = 0
    rejected: int = 0
    errors: int = 0
    error_details: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
