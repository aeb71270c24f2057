from pydantic import BaseModel
from typing import Optional, Dict, Any, Literal

from models.flow_data import MediaReference


class RenderedMessage(BaseModel):
    """
    Channel-ready message handed to the dispatcher
    """
    type: Literal["text", "media", "interactive"]
    text: Optional[str] = None
    media: Optional[MediaReference] = None
    interactive: Optional[Dict[str, Any]] = None
    session_token: Optional[str] = None
    node_id: Optional[str] = None
