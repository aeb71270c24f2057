from pydantic import BaseModel
from typing import Optional


class AccountCredentials(BaseModel):
    account_id: str
    access_token: str
    phone_number_id: Optional[str] = None
    business_account_id: Optional[str] = None
