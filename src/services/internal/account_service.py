import aiohttp
from typing import Optional

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Models
from models.response.account.account_credentials import AccountCredentials

class AccountService:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):
        self.remote_account_service = environment_utils.get_env_variable("ACCOUNT_SERVICE_URL")
        self.log_util = log_util

    async def get_credentials(self, account_id: str) -> Optional[AccountCredentials]:
        """
        Per-account transport credentials. None when no account service is configured
        or the account is unknown.
        """
        if not self.remote_account_service:
            return None
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{self.remote_account_service}/{account_id}/credentials") as response:
                if response.status != 200:
                    self.log_util.warning(
                        service_name="AccountService",
                        message=f"No credentials for account {account_id} (status {response.status})"
                    )
                    return None
                credentials_data = await response.json()
                return AccountCredentials(**credentials_data)
