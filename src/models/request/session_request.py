from pydantic import BaseModel, Field


class StartSessionRequest(BaseModel):
    """
    Operator or campaign initiated start of a flow for one conversation
    """
    flow_id: str = Field(..., description="Flow to start; its current published version is used")
    conversation_id: str = Field(..., description="Internal conversation identifier")

    class Config:
        json_schema_extra = {
            "example": {
                "flow_id": "welcome-flow",
                "conversation_id": "phone_number_id_67890:15551234567"
            }
        }
