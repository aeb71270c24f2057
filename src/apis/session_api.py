from typing import Dict, Any
from fastapi import APIRouter, HTTPException, Request

# Utils
from utils.log_utils import LogUtil

# Services
from services.session_service import SessionService
from services.webhook_service import WebhookService

# Models
from models.request.session_request import StartSessionRequest
from models.session_data import SessionData

# Exceptions
from exceptions.flow_exception import FlowException, FlowValidationException


def create_session_api(
    log_util: LogUtil,
    session_service: SessionService,
    webhook_service: WebhookService
) -> APIRouter:
    router = APIRouter(
        prefix="/session",
        tags=["session"],
    )

    def to_http_exception(action: str, e: Exception) -> HTTPException:
        log_util.error(service_name="SessionAPI", message=f"Error {action}: {e}")
        if isinstance(e, FlowValidationException):
            return HTTPException(status_code=e.status_code, detail={"message": e.message, "errors": e.errors})
        if isinstance(e, FlowException):
            return HTTPException(status_code=e.status_code, detail=e.message)
        return HTTPException(status_code=500, detail=str(e))

    def get_account_id(request: Request) -> str:
        account_id = request.headers.get("x-account-id")
        if not account_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return account_id

    def to_response(session: SessionData) -> Dict[str, Any]:
        # The session token only ever travels to the dispatcher
        return session.model_dump(exclude={"session_token"})

    @router.post("/start")
    async def start_session(request: Request, start_request: StartSessionRequest):
        """
        Start a flow for a conversation outside of keyword triggers (campaigns, operators).
        """
        account_id = get_account_id(request)
        try:
            session = await webhook_service.start_session_for_flow(
                flow_id=start_request.flow_id,
                conversation_id=start_request.conversation_id,
                account_id=account_id
            )
            return to_response(session)
        except Exception as e:
            raise to_http_exception("starting session", e)

    @router.get("/detail/{session_id}")
    async def get_session(request: Request, session_id: str):
        account_id = get_account_id(request)
        try:
            return to_response(await session_service.get_session(session_id, account_id=account_id))
        except Exception as e:
            raise to_http_exception("getting session", e)

    @router.get("/conversation/{conversation_id}")
    async def get_conversation_sessions(request: Request, conversation_id: str):
        """
        Sessions of a conversation owned by the calling account, oldest first
        """
        account_id = get_account_id(request)
        try:
            sessions = await session_service.get_sessions_by_conversation(conversation_id, account_id=account_id)
            return [to_response(session) for session in sessions]
        except Exception as e:
            raise to_http_exception("getting conversation sessions", e)

    return router
