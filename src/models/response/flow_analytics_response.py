from typing import Dict, Optional
from pydantic import BaseModel, Field


class FlowAnalyticsResponse(BaseModel):
    flow_id: str
    version: Optional[int] = Field(None, description="Restricts node counts to one version when set")
    node_counts: Dict[str, int] = Field(default_factory=dict, description="Node executions keyed by node id")
    session_counts: Dict[str, int] = Field(default_factory=dict, description="Sessions keyed by status")
