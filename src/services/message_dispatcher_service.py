"""
Message Dispatcher Service
HTTP boundary to the outbound transport. Sends rendered messages and returns
the provider delivery id.
"""
import logging
from typing import Optional, Dict, Any

import httpx
import tenacity

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Services
from services.internal.account_service import AccountService

# Models
from models.rendered_message import RenderedMessage

# Exceptions
from exceptions.flow_exception import DispatchException


class MessageDispatcherService:
    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        account_service: AccountService,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_wait: Optional[tenacity.wait.wait_base] = None
    ):
        self.log_util = log_util
        self.account_service = account_service
        self.dispatcher_url = environment_utils.get_env_variable("DISPATCHER_URL")
        self.timeout = float(environment_utils.get_env_variable("DISPATCH_TIMEOUT_SECONDS"))
        self.max_attempts = int(environment_utils.get_env_variable("DISPATCH_MAX_ATTEMPTS"))
        self.transport = transport
        self.retry_wait = retry_wait or tenacity.wait_exponential(multiplier=2, min=1, max=10)

    async def _headers(self, account_id: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if account_id:
            credentials = await self.account_service.get_credentials(account_id)
            if credentials is not None:
                headers["Authorization"] = f"Bearer {credentials.access_token}"
        return headers

    @staticmethod
    def _delivery_id(response_data: Any) -> Optional[str]:
        if not isinstance(response_data, dict):
            return None
        if response_data.get("delivery_id"):
            return response_data["delivery_id"]
        # WhatsApp Cloud style body
        messages = response_data.get("messages")
        if not isinstance(messages, list) or not messages or not isinstance(messages[0], dict):
            return None
        return messages[0].get("id")

    async def send(self, conversation_id: str, rendered_message: RenderedMessage, account_id: Optional[str] = None) -> str:
        """
        Send one message. Transport errors are retried with exponential backoff.

        Raises:
            DispatchException: the message could not be delivered
        """
        payload = {
            "conversation_id": conversation_id,
            "account_id": account_id,
            "message": rendered_message.model_dump(mode="json", exclude_none=True)
        }
        headers = await self._headers(account_id)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                async for attempt in tenacity.AsyncRetrying(
                    retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
                    stop=tenacity.stop_after_attempt(self.max_attempts),
                    wait=self.retry_wait,
                    before_sleep=tenacity.before_sleep_log(self.log_util.logger, logging.WARNING),
                    reraise=True
                ):
                    with attempt:
                        response = await client.post(self.dispatcher_url, json=payload, headers=headers)
        except (httpx.RequestError, httpx.TimeoutException) as e:
            self.log_util.error(
                service_name="MessageDispatcherService",
                message=f"Dispatch to conversation {conversation_id} failed after {self.max_attempts} attempt(s): {str(e)}"
            )
            raise DispatchException(message=f"Dispatch failed: {str(e)}")

        if response.status_code not in (200, 201, 202):
            self.log_util.error(
                service_name="MessageDispatcherService",
                message=f"Dispatcher returned {response.status_code} for conversation {conversation_id}: {response.text}"
            )
            raise DispatchException(message=f"Dispatcher returned status {response.status_code}")

        try:
            delivery_id = self._delivery_id(response.json())
        except ValueError:
            delivery_id = None
        if not delivery_id:
            raise DispatchException(message="Dispatcher response carried no delivery id")

        self.log_util.info(
            service_name="MessageDispatcherService",
            message=f"Message for node {rendered_message.node_id} sent to conversation {conversation_id}, delivery id: {delivery_id}"
        )
        return delivery_id
