from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ERROR = "error"


class SessionData(BaseModel):
    """
    Execution pointer of one flow run for one conversation.
    Bound to a single published flow version for its whole life.
    """
    id: Optional[str] = None  # MongoDB _id
    session_id: str = Field(..., description="Session identifier")
    conversation_id: str = Field(..., description="Internal conversation identifier")
    account_id: str = Field(..., description="Owning account of the flow")
    flow_id: str
    flow_version: int
    current_node_id: Optional[str] = Field(None, description="None before start and after termination")
    session_token: str = Field(..., description="Opaque correlator for asynchronous provider responses")
    status: SessionStatus = SessionStatus.ACTIVE
    variables: Dict[str, Any] = Field(default_factory=dict, description="Values recorded by waitForReply nodes")
    form_values: Dict[str, Any] = Field(default_factory=dict, description="Form replies keyed by operator label")
    last_reply: Optional[Any] = Field(None, description="Most recent valid waitForReply value")
    invalid_reply_count: int = 0
    dispatch_attempts: int = 0
    pending_continuation_id: Optional[str] = Field(None, description="Continuation the session is waiting on")
    last_error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE
