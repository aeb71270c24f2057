from typing import Optional, Dict, Any

# Utils
from utils.log_utils import LogUtil
from utils.lock_utils import ConversationLockManager

# Database
from database.flow_db import FlowDB

# Services
from services.flow_service import FlowService
from services.session_service import SessionService
from services.event_normalizer_service import EventNormalizerService
from services.trigger_service import TriggerService
from services.flow_interpreter_service import FlowInterpreterService

# Models
from models.inbound_event import InboundEvent, EventKind
from models.session_data import SessionData
from models.webhook_message_data import WebhookMessageData, WebhookStatus
from models.response.webhook_response import WebhookResponse

# Exceptions
from exceptions.flow_exception import (
    FlowServiceException,
    FlowNotFoundException,
    FlowValidationException,
    DuplicateEventException,
    SessionTokenMismatchException,
)

ACCEPTED = "accepted"
DUPLICATE = "duplicate"
REJECTED = "rejected"
IGNORED = "ignored"
FAILED = "failed"


class WebhookService:
    """
    Service for handling provider webhooks and timer ticks.
    Every event for a conversation is processed under that conversation's lock.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        flow_service: FlowService,
        session_service: SessionService,
        event_normalizer_service: EventNormalizerService,
        trigger_service: TriggerService,
        flow_interpreter_service: FlowInterpreterService,
        lock_manager: Optional[ConversationLockManager] = None,
        continuation_retry_limit: int = 3
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.flow_service = flow_service
        self.session_service = session_service
        self.event_normalizer_service = event_normalizer_service
        self.trigger_service = trigger_service
        self.flow_interpreter_service = flow_interpreter_service
        self.lock_manager = lock_manager or ConversationLockManager()
        self.continuation_retry_limit = continuation_retry_limit

    async def process_webhook_payload(self, payload: Dict[str, Any]) -> WebhookResponse:
        """
        Process incoming provider payload.

        Steps:
        1. Save webhook with status "pending" (failure here is the only error the provider sees)
        2. Parse and process each event
        3. Update webhook status to "processed" or "error" with counters
        """
        try:
            webhook = await self.flow_db.save_webhook_message(WebhookMessageData(payload=payload))
        except Exception as e:
            self.log_util.error(
                service_name="WebhookService",
                message=f"Error recording webhook payload: {str(e)}"
            )
            raise FlowServiceException(message=f"Webhook could not be recorded: {str(e)}")

        try:
            events = await self.event_normalizer_service.parse_payload(payload)
        except Exception as e:
            self.log_util.error(
                service_name="WebhookService",
                message=f"Error parsing webhook {webhook.id}: {str(e)}"
            )
            webhook.status = WebhookStatus.ERROR
            webhook.errors = 1
            webhook.error_details = str(e)
            await self._update_webhook(webhook)
            return self._to_response(webhook, "Webhook recorded, parsing failed")

        webhook.events_received = len(events)
        error_details = []
        for event in events:
            try:
                result = await self.process_inbound_event(event)
            except Exception as e:
                self.log_util.error(
                    service_name="WebhookService",
                    message=f"Error processing event {event.provider_message_id} for conversation {event.conversation_id}: {str(e)}"
                )
                error_details.append(f"{event.provider_message_id}: {str(e)}")
                result = FAILED

            if result == ACCEPTED:
                webhook.events_accepted += 1
            elif result == DUPLICATE:
                webhook.duplicates += 1
            elif result == REJECTED:
                webhook.rejected += 1
            elif result == FAILED:
                webhook.errors += 1

        if webhook.errors:
            webhook.status = WebhookStatus.ERROR
            webhook.error_details = "; ".join(error_details) or None
        else:
            webhook.status = WebhookStatus.PROCESSED
        await self._update_webhook(webhook)

        self.log_util.info(
            service_name="WebhookService",
            message=f"Webhook {webhook.id}: {webhook.events_received} received, {webhook.events_accepted} accepted, "
                    f"{webhook.duplicates} duplicate(s), {webhook.rejected} rejected, {webhook.errors} error(s)"
        )
        return self._to_response(webhook, "Webhook processed")

    async def _update_webhook(self, webhook: WebhookMessageData) -> None:
        try:
            await self.flow_db.update_webhook_message(webhook)
        except Exception as e:
            self.log_util.error(
                service_name="WebhookService",
                message=f"Error updating webhook {webhook.id} status: {str(e)}"
            )

    @staticmethod
    def _to_response(webhook: WebhookMessageData, message: str) -> WebhookResponse:
        return WebhookResponse(
            status="success" if webhook.status == WebhookStatus.PROCESSED else "error",
            message=message,
            webhook_id=webhook.id,
            events_received=webhook.events_received,
            events_accepted=webhook.events_accepted,
            duplicates=webhook.duplicates,
            rejected=webhook.rejected,
            errors=webhook.errors,
            error_details=webhook.error_details
        )

    async def process_inbound_event(self, event: InboundEvent) -> str:
        """
        Admit one event and hand it to the interpreter. Real messages and timer
        ticks both come through here.

        A timer tick that raises after admission is put back for the next sweep,
        or fails its session once the continuation ran out of attempts.

        Returns:
            "accepted", "duplicate", "rejected", "ignored" or "failed"
        """
        async with self.lock_manager.lock(event.conversation_id):
            try:
                await self.event_normalizer_service.admit_event(event)
            except DuplicateEventException:
                return DUPLICATE
            except SessionTokenMismatchException as e:
                self.log_util.warning(
                    service_name="WebhookService",
                    message=f"Event {event.provider_message_id} rejected: {e.message}"
                )
                return REJECTED

            if event.kind != EventKind.TIMEOUT:
                return await self._process_admitted_event(event)

            await self.session_service.mark_continuation_fired(event.payload.get("continuation_id"))
            try:
                return await self._process_admitted_event(event)
            except Exception as e:
                await self._recover_timer_event(event, e)
                raise

    async def _process_admitted_event(self, event: InboundEvent) -> str:
        session = await self.session_service.get_active_session(event.conversation_id)
        if session is None:
            return await self._start_from_trigger(event)

        if event.session_id and event.session_id != session.session_id:
            self.log_util.info(
                service_name="WebhookService",
                message=f"Event {event.provider_message_id} belongs to session {event.session_id}, not active session {session.session_id}"
            )
            return IGNORED

        try:
            flow_version = await self.flow_service.get_flow(session.flow_id, session.flow_version)
        except FlowNotFoundException as e:
            await self.session_service.fail(session, e.message)
            return FAILED

        await self.flow_interpreter_service.handle_event(session, flow_version.graph, event)
        return ACCEPTED

    async def _recover_timer_event(self, event: InboundEvent, error: Exception) -> None:
        continuation_id = event.payload.get("continuation_id")
        attempts = int(event.payload.get("attempts") or 0) + 1
        try:
            if attempts < self.continuation_retry_limit:
                await self.event_normalizer_service.release_event(event)
                await self.session_service.reopen_continuation(continuation_id)
                self.log_util.warning(
                    service_name="WebhookService",
                    message=f"Continuation {continuation_id} failed on attempt {attempts}, left for the next sweep: {str(error)}"
                )
                return

            session = await self.session_service.get_active_session(event.conversation_id)
            if session is not None and session.session_id == event.session_id:
                await self.session_service.fail(
                    session, f"Continuation {continuation_id} failed after {attempts} attempt(s): {str(error)}"
                )
        except Exception as e:
            self.log_util.error(
                service_name="WebhookService",
                message=f"Error recovering continuation {continuation_id}: {str(e)}"
            )

    async def _start_from_trigger(self, event: InboundEvent) -> str:
        if event.kind == EventKind.TIMEOUT:
            self.log_util.info(
                service_name="WebhookService",
                message=f"Timer {event.provider_message_id} fired with no active session in conversation {event.conversation_id}"
            )
            return IGNORED

        flow_version = await self.trigger_service.find_flow(event.account_id, event)
        if flow_version is None:
            self.log_util.info(
                service_name="WebhookService",
                message=f"No flow triggered by event {event.provider_message_id} in conversation {event.conversation_id}"
            )
            return IGNORED

        session = await self.session_service.start_session(
            event.conversation_id, flow_version.account_id, flow_version.flow_id, flow_version.version
        )
        await self.flow_interpreter_service.start(session, flow_version.graph)
        return ACCEPTED

    async def start_session_for_flow(self, flow_id: str, conversation_id: str, account_id: Optional[str] = None) -> SessionData:
        """
        Operator or campaign initiated start of a flow for one conversation.

        Raises:
            FlowValidationException: flow is inactive or unpublished
            SessionConflictException: the conversation already has an active session
        """
        flow = await self.flow_service.get_flow_detail(flow_id, account_id)
        if not flow.is_active:
            raise FlowValidationException(message=f"Flow {flow_id} is not active", errors=["flow is deactivated"])
        if flow.current_version is None:
            raise FlowValidationException(message=f"Flow {flow_id} is not published", errors=["flow has no published version"])

        async with self.lock_manager.lock(conversation_id):
            flow_version = await self.flow_service.get_flow(flow_id, flow.current_version)
            session = await self.session_service.start_session(
                conversation_id, flow.account_id, flow_id, flow_version.version
            )
            return await self.flow_interpreter_service.start(session, flow_version.graph)
