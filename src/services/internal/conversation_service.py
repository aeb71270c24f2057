import httpx

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Models
from models.response.conversation.conversation_ref import ConversationRef

# Exceptions
from exceptions.flow_exception import FlowServiceException


class ConversationService:
    """Resolves a provider-side contact to an internal conversation id."""
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):
        self.conversation_service_url = environment_utils.get_env_variable("CONVERSATION_SERVICE_URL")
        self.log_util = log_util

    async def resolve_conversation(self, channel_account_id: str, contact: str) -> ConversationRef:
        if not self.conversation_service_url:
            # No conversation service configured: the contact on a channel account is the conversation
            return ConversationRef(
                conversation_id=f"{channel_account_id}:{contact}",
                account_id=channel_account_id
            )

        resolve_url = f"{self.conversation_service_url}/resolve"
        params = {"channel_account_id": channel_account_id, "contact": contact}
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(resolve_url, params=params)
        except httpx.RequestError as e:
            self.log_util.error(
                service_name="ConversationService",
                message=f"Conversation lookup failed for {contact}: {str(e)}"
            )
            raise FlowServiceException(message=f"Conversation lookup failed: {str(e)}")

        if response.status_code == 200:
            return ConversationRef(**response.json())
        raise FlowServiceException(
            message=f"Conversation lookup returned {response.status_code} for {channel_account_id}:{contact}"
        )

