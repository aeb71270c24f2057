from fastapi import APIRouter, HTTPException
from typing import Dict, Any

# Utils
from utils.log_utils import LogUtil

# Services
from services.webhook_service import WebhookService

# Models
from models.response.webhook_response import WebhookResponse

# Exceptions
from exceptions.flow_exception import FlowException


def create_webhook_message_api(
    log_util: LogUtil,
    webhook_service: WebhookService
) -> APIRouter:
    """
    Create API router for provider webhook deliveries.
    """
    router = APIRouter(
        prefix="/webhook",
        tags=["webhook"],
    )

    @router.post("", response_model=WebhookResponse)
    async def receive_webhook(payload: Dict[str, Any]) -> WebhookResponse:
        """
        Receive a provider payload with one or more messages.

        Answers 200 as soon as the payload is recorded, even if processing an
        event fails afterwards, so the provider does not retry. Only a failure
        to record the payload is reported as an error.
        """
        try:
            return await webhook_service.process_webhook_payload(payload)
        except FlowException as e:
            log_util.error(
                service_name="WebhookMessageAPI",
                message=f"Webhook not recorded: {e.message}"
            )
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(
                service_name="WebhookMessageAPI",
                message=f"Error receiving webhook: {str(e)}"
            )
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/health")
    async def webhook_health_check():
        return {"status": "healthy", "service": "webhook"}

    return router
