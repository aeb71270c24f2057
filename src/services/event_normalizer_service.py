"""
Event Normalizer Service
Turns provider webhook payloads into canonical inbound events and enforces
exactly-once admission per (conversation, provider message id).
"""
import json
from typing import Optional, List, Dict, Any

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Services
from services.session_service import SessionService
from services.internal.conversation_service import ConversationService

# Models
from models.inbound_event import InboundEvent, EventKind, ProcessedEventData

# Exceptions
from exceptions.flow_exception import DuplicateEventException

FORM_REPLY_TYPES = ("nfm_reply", "form_reply")
SESSION_TOKEN_KEY = "flow_token"


class EventNormalizerService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        session_service: SessionService,
        conversation_service: ConversationService
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.session_service = session_service
        self.conversation_service = conversation_service

    def _iter_values(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Message containers of a payload. Supports the WhatsApp Cloud envelope
        (entry[].changes[].value) and a flat {"messages": [...]} body.
        """
        if "entry" in payload:
            values = []
            for entry in payload.get("entry") or []:
                for change in entry.get("changes") or []:
                    value = change.get("value")
                    if isinstance(value, dict):
                        values.append(value)
            return values
        if "messages" in payload:
            return [payload]
        return []

    @staticmethod
    def _channel_account_id(value: Dict[str, Any]) -> Optional[str]:
        metadata = value.get("metadata") or {}
        return metadata.get("phone_number_id") or value.get("channel_account_id")

    def _parse_message(self, message: Dict[str, Any]) -> Optional[tuple]:
        """
        Returns (kind, payload, session_token), or None for unsupported messages.
        """
        message_type = message.get("type")

        if message_type == "text":
            body = (message.get("text") or {}).get("body")
            if body is None:
                return None
            return EventKind.TEXT, {"text": body}, None

        if message_type == "button":
            # Template quick-reply button
            button = message.get("button") or {}
            button_id = button.get("payload") or button.get("text")
            return EventKind.BUTTON_REPLY, {"id": button_id, "title": button.get("text") or button_id}, None

        if message_type == "interactive":
            interactive = message.get("interactive") or {}
            interactive_type = interactive.get("type")

            if interactive_type == "button_reply":
                reply = interactive.get("button_reply") or {}
                return EventKind.BUTTON_REPLY, {"id": reply.get("id"), "title": reply.get("title")}, None

            if interactive_type == "list_reply":
                reply = interactive.get("list_reply") or {}
                return EventKind.LIST_REPLY, {
                    "id": reply.get("id"),
                    "title": reply.get("title"),
                    "description": reply.get("description")
                }, None

            if interactive_type in FORM_REPLY_TYPES:
                reply = interactive.get(interactive_type) or {}
                return self._parse_form_reply(reply)

        return None

    def _parse_form_reply(self, reply: Dict[str, Any]) -> Optional[tuple]:
        response_json = reply.get("response_json")
        if isinstance(response_json, str):
            try:
                response_data = json.loads(response_json)
            except json.JSONDecodeError as e:
                self.log_util.warning(
                    service_name="EventNormalizerService",
                    message=f"Form reply with unreadable response_json: {str(e)}"
                )
                return None
        elif isinstance(response_json, dict):
            response_data = dict(response_json)
        else:
            return None

        if not isinstance(response_data, dict):
            return None
        session_token = response_data.pop(SESSION_TOKEN_KEY, None)
        return EventKind.FORM_REPLY, {"fields": response_data, "body": reply.get("body")}, session_token

    async def parse_payload(self, payload: Dict[str, Any]) -> List[InboundEvent]:
        """
        Parse a provider payload into zero or more inbound events.
        Unsupported or malformed messages are skipped with a warning.
        """
        events: List[InboundEvent] = []
        for value in self._iter_values(payload):
            channel_account_id = self._channel_account_id(value)
            for message in value.get("messages") or []:
                message_id = message.get("id")
                contact = message.get("from")
                if not message_id or not contact or not channel_account_id:
                    self.log_util.warning(
                        service_name="EventNormalizerService",
                        message=f"Skipping message without id, sender or channel account: {message_id}"
                    )
                    continue

                parsed = self._parse_message(message)
                if parsed is None:
                    self.log_util.warning(
                        service_name="EventNormalizerService",
                        message=f"Skipping unsupported message {message_id} of type {message.get('type')}"
                    )
                    continue
                kind, event_payload, session_token = parsed

                conversation = await self.conversation_service.resolve_conversation(channel_account_id, contact)
                events.append(InboundEvent(
                    conversation_id=conversation.conversation_id,
                    account_id=conversation.account_id,
                    provider_message_id=message_id,
                    kind=kind,
                    payload=event_payload,
                    contact_identifier=contact,
                    session_token=session_token
                ))
        return events

    async def admit_event(self, event: InboundEvent) -> InboundEvent:
        """
        Admit an event exactly once. Must run while holding the conversation lock.

        Raises:
            DuplicateEventException: the provider message id was already processed
            SessionTokenMismatchException: a form reply for a session that is not the active one
        """
        recorded = await self.flow_db.record_processed_event(ProcessedEventData(
            conversation_id=event.conversation_id,
            provider_message_id=event.provider_message_id,
            kind=event.kind
        ))
        if not recorded:
            self.log_util.info(
                service_name="EventNormalizerService",
                message=f"Duplicate event {event.provider_message_id} for conversation {event.conversation_id} discarded"
            )
            raise DuplicateEventException(
                message=f"Event {event.provider_message_id} already processed"
            )

        if event.kind == EventKind.FORM_REPLY:
            session = await self.session_service.resolve_session_by_token(event.conversation_id, event.session_token)
            event.session_id = session.session_id
        return event

    async def release_event(self, event: InboundEvent) -> None:
        """
        Drop the ledger entry of an admitted event so a redelivery is processed again.
        """
        await self.flow_db.release_processed_event(event.conversation_id, event.provider_message_id)
