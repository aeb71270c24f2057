from pydantic import BaseModel


class ConversationRef(BaseModel):
    conversation_id: str
    account_id: str
