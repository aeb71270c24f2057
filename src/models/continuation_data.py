from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class ContinuationKind(str, Enum):
    WAIT = "wait"
    DELAY = "delay"
    DISPATCH_RETRY = "dispatch_retry"


class ContinuationStatus(str, Enum):
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


class ContinuationData(BaseModel):
    """
    Model for a pending continuation written when a session yields on a
    waitForReply, delay or failed dispatch.
    Used by the background scheduler to replay expired continuations as timeout events.
    """
    id: Optional[str] = None  # MongoDB _id
    continuation_id: str = Field(..., description="Continuation identifier")
    session_id: str = Field(..., description="Session that yielded")
    conversation_id: str = Field(..., description="Conversation of the session")
    account_id: Optional[str] = Field(None, description="Owning account of the flow")
    flow_id: str = Field(..., description="Flow ID the session is bound to")
    flow_version: int = Field(..., description="Flow version the session is bound to")
    node_id: str = Field(..., description="Node the session is parked on")
    kind: ContinuationKind = Field(..., description="What the continuation resumes")
    expected_reply_type: Optional[str] = Field(None, description="replyType of the waitForReply node, if any")
    deadline: Optional[datetime] = Field(None, description="When the continuation fires; None waits indefinitely")
    status: ContinuationStatus = Field(default=ContinuationStatus.PENDING)
    attempts: int = Field(default=0, description="Replays that raised and were put back for the next sweep")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Timestamp when the record was created")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="Timestamp when the record was last updated")
