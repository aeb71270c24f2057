from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class EdgeRequest(BaseModel):
    """
    Edge as sent by the builder. Sequence numbers are assigned by the store.
    """
    id: Optional[str] = None
    sourceNodeId: str
    targetNodeId: str
    discriminator: Optional[str] = None


class FlowCreateRequest(BaseModel):
    name: str = Field(..., description="Flow name")
    nodes: List[Dict[str, Any]] = Field(default_factory=list, description="Node objects as produced by the builder")
    edges: List[EdgeRequest] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Welcome",
                "nodes": [
                    {"id": "trigger-1", "type": "trigger", "keywords": ["hi"]},
                    {"id": "send-1", "type": "sendMessage", "content": "Hi"}
                ],
                "edges": [
                    {"sourceNodeId": "trigger-1", "targetNodeId": "send-1"}
                ]
            }
        }


class FlowUpdateRequest(BaseModel):
    """
    If nodes/edges are provided they REPLACE the draft arrays
    """
    name: Optional[str] = None
    nodes: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[EdgeRequest]] = None


class FlowStatusRequest(BaseModel):
    is_active: bool = Field(..., description="False blocks new session starts; running sessions continue")
