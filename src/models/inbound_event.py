from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum


class EventKind(str, Enum):
    TEXT = "text"
    BUTTON_REPLY = "button_reply"
    LIST_REPLY = "list_reply"
    FORM_REPLY = "form_reply"
    TIMEOUT = "timeout"


class InboundEvent(BaseModel):
    """
    Canonical, provider-agnostic user action (or timer tick).

    payload by kind:
        text:          {"text": "..."}
        button_reply:  {"id": "...", "title": "..."}
        list_reply:    {"id": "...", "title": "...", "description": "..."}
        form_reply:    {"fields": {"<generated name>": "<value>"}, "body": "..."}
        timeout:       {"continuation_id": "...", "continuation_kind": "...", "node_id": "..."}
    """
    conversation_id: str
    account_id: Optional[str] = None
    provider_message_id: str
    kind: EventKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    contact_identifier: Optional[str] = None
    session_token: Optional[str] = None
    session_id: Optional[str] = None
    unmapped: bool = Field(default=False, description="Set when a form reply carried fields with no mapping entry")
    received_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def reply_text(self) -> Optional[str]:
        if self.kind == EventKind.TEXT:
            return self.payload.get("text")
        if self.kind in (EventKind.BUTTON_REPLY, EventKind.LIST_REPLY):
            return self.payload.get("title") or self.payload.get("id")
        return None

    @property
    def reply_id(self) -> Optional[str]:
        if self.kind in (EventKind.BUTTON_REPLY, EventKind.LIST_REPLY):
            return self.payload.get("id")
        return None


class ProcessedEventData(BaseModel):
    """
    Dedup ledger entry, unique per (conversation_id, provider_message_id)
    """
    conversation_id: str
    provider_message_id: str
    kind: EventKind
    created_at: datetime = Field(default_factory=datetime.utcnow)
