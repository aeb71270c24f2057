from pydantic import BaseModel, Field
from typing import Optional, Dict, List
from datetime import datetime


class FieldMappingData(BaseModel):
    """
    One form component of a published flow version: the operator label and the
    provider-safe field name generated for it. Written once at publish.
    """
    id: Optional[str] = None  # MongoDB _id
    flow_id: str = Field(..., description="Flow ID")
    version: int = Field(..., description="Published flow version the mapping belongs to")
    node_id: str = Field(..., description="sendMessage node carrying the form")
    component_id: str = Field(..., description="Form component ID from the builder")
    original_label: str = Field(..., description="Operator-facing label")
    generated_field_name: str = Field(..., description="Identifier sent to the provider")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class FormTranslation(BaseModel):
    """
    Result of translating a form reply back to operator labels
    """
    values: Dict[str, str] = Field(default_factory=dict)
    unmapped: List[str] = Field(default_factory=list, description="Generated names with no mapping entry")

    @property
    def is_unmapped(self) -> bool:
        return len(self.unmapped) > 0
