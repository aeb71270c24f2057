from pydantic import BaseModel, Field
from typing import Optional, Any
from datetime import datetime


class SessionTransactionData(BaseModel):
    """
    Model for storing node execution records.
    Tracks node processing per session for analytics and auditing.
    """
    id: Optional[str] = None  # MongoDB _id
    session_id: str = Field(..., description="Session that executed the node")
    conversation_id: str = Field(..., description="Conversation of the session")
    flow_id: str = Field(..., description="Flow ID where the node exists")
    flow_version: int = Field(..., description="Flow version the session is bound to")
    node_id: str = Field(..., description="Node ID that was processed")
    node_type: str = Field(..., description="Type of node (trigger, sendMessage, waitForReply, condition, delay)")
    processed_status: str = Field(default="success", description="Processing status: success, waiting, retry, error")
    processed_value: Optional[Any] = Field(None, description="Processed value from node (e.g. branch for condition, delivery id for sendMessage)")
    message: Optional[str] = Field(None, description="Error or status detail")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Timestamp when transaction was created")
