import itertools
import json
from types import SimpleNamespace
from typing import Optional, List, Dict, Any

import pytest

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.lock_utils import ConversationLockManager

from services.internal.conversation_service import ConversationService
from services.field_mapper_service import FieldMapperService
from services.flow_service import FlowService
from services.session_service import SessionService
from services.session_transaction_service import SessionTransactionService
from services.event_normalizer_service import EventNormalizerService
from services.condition_service import ConditionService
from services.reply_validation_service import ReplyValidationService
from services.flow_interpreter_service import FlowInterpreterService
from services.trigger_service import TriggerService
from services.webhook_service import WebhookService
from services.continuation_scheduler_service import ContinuationSchedulerService

from models.flow_data import FlowStatus
from models.session_data import SessionStatus
from models.continuation_data import ContinuationStatus
from models.request.flow_request import FlowCreateRequest, EdgeRequest

from exceptions.flow_exception import DispatchException

PHONE_NUMBER_ID = "PN1"
CONTACT = "15551234567"
ACCOUNT_ID = PHONE_NUMBER_ID
CONVERSATION_ID = f"{PHONE_NUMBER_ID}:{CONTACT}"


class InMemoryFlowDB:
    """
    FlowDB double with the same async interface, backed by dicts.
    Stored models are copied on the way in and out like documents would be.
    """

    def __init__(self):
        self.flows = {}
        self.flow_versions = {}
        self.field_mappings = []
        self.sessions = {}
        self.continuations = {}
        self.processed_events = set()
        self.webhook_messages = {}
        self.session_transactions = []
        self._ids = itertools.count(1)

    def _next_id(self) -> str:
        return f"{next(self._ids):024x}"

    async def ensure_indexes(self):
        return None

    def close(self):
        return None

    async def create_flow(self, flow):
        stored = flow.model_copy(deep=True)
        stored.id = self._next_id()
        self.flows[stored.flow_id] = stored
        return stored.model_copy(deep=True)

    async def get_flow(self, flow_id):
        flow = self.flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def get_flows(self, account_id):
        flows = [flow for flow in self.flows.values() if flow.account_id == account_id]
        return [flow.model_copy(deep=True) for flow in sorted(flows, key=lambda flow: flow.created_at)]

    async def update_flow(self, flow):
        if flow.flow_id not in self.flows:
            return None
        stored = flow.model_copy(deep=True)
        stored.id = self.flows[flow.flow_id].id
        self.flows[flow.flow_id] = stored
        return stored.model_copy(deep=True)

    async def save_flow_version(self, flow_version):
        key = (flow_version.flow_id, flow_version.version)
        if key in self.flow_versions:
            raise RuntimeError(f"duplicate flow version {key}")
        stored = flow_version.model_copy(deep=True)
        stored.id = self._next_id()
        self.flow_versions[key] = stored
        return stored.model_copy(deep=True)

    async def get_flow_version(self, flow_id, version):
        flow_version = self.flow_versions.get((flow_id, version))
        return flow_version.model_copy(deep=True) if flow_version else None

    async def update_flow_version_status(self, flow_id, version, status):
        flow_version = self.flow_versions.get((flow_id, version))
        if flow_version is None:
            return False
        flow_version.status = status
        return True

    async def get_latest_flow_version_number(self, flow_id):
        versions = [version for (stored_flow_id, version) in self.flow_versions if stored_flow_id == flow_id]
        return max(versions) if versions else None

    async def delete_flow_version(self, flow_id, version):
        return self.flow_versions.pop((flow_id, version), None) is not None

    async def save_field_mappings(self, field_mappings):
        self.field_mappings.extend(mapping.model_copy(deep=True) for mapping in field_mappings)
        return True

    async def get_field_mappings(self, flow_id, version):
        return [
            mapping.model_copy(deep=True) for mapping in self.field_mappings
            if mapping.flow_id == flow_id and mapping.version == version
        ]

    async def delete_field_mappings(self, flow_id, version):
        kept = [m for m in self.field_mappings if (m.flow_id, m.version) != (flow_id, version)]
        deleted = len(self.field_mappings) - len(kept)
        self.field_mappings = kept
        return deleted

    async def create_session(self, session):
        if session.status == SessionStatus.ACTIVE and any(
            existing.conversation_id == session.conversation_id and existing.status == SessionStatus.ACTIVE
            for existing in self.sessions.values()
        ):
            return None
        stored = session.model_copy(deep=True)
        stored.id = self._next_id()
        self.sessions[stored.session_id] = stored
        return stored.model_copy(deep=True)

    async def get_session(self, session_id):
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_active_session(self, conversation_id):
        for session in self.sessions.values():
            if session.conversation_id == conversation_id and session.status == SessionStatus.ACTIVE:
                return session.model_copy(deep=True)
        return None

    async def get_sessions_by_conversation(self, conversation_id):
        sessions = [session for session in self.sessions.values() if session.conversation_id == conversation_id]
        return [session.model_copy(deep=True) for session in sorted(sessions, key=lambda session: session.started_at)]

    async def update_session(self, session):
        if session.session_id not in self.sessions:
            return None
        stored = session.model_copy(deep=True)
        stored.id = self.sessions[session.session_id].id
        self.sessions[session.session_id] = stored
        return stored.model_copy(deep=True)

    async def get_session_counts_by_status(self, flow_id):
        counts: Dict[str, int] = {}
        for session in self.sessions.values():
            if session.flow_id == flow_id:
                counts[session.status.value] = counts.get(session.status.value, 0) + 1
        return counts

    async def save_continuation(self, continuation):
        stored = continuation.model_copy(deep=True)
        stored.id = self._next_id()
        self.continuations[stored.continuation_id] = stored
        return stored.model_copy(deep=True)

    async def get_due_continuations(self, now, limit=100):
        due = [
            continuation for continuation in self.continuations.values()
            if continuation.status == ContinuationStatus.PENDING
            and continuation.deadline is not None
            and continuation.deadline <= now
        ]
        due.sort(key=lambda continuation: continuation.deadline)
        return [continuation.model_copy(deep=True) for continuation in due[:limit]]

    async def mark_continuation_fired(self, continuation_id):
        continuation = self.continuations.get(continuation_id)
        if continuation is None or continuation.status != ContinuationStatus.PENDING:
            return False
        continuation.status = ContinuationStatus.FIRED
        return True

    async def reopen_continuation(self, continuation_id):
        continuation = self.continuations.get(continuation_id)
        if continuation is None or continuation.status != ContinuationStatus.FIRED:
            return False
        continuation.status = ContinuationStatus.PENDING
        continuation.attempts += 1
        return True

    async def cancel_pending_continuations(self, session_id):
        cancelled = 0
        for continuation in self.continuations.values():
            if continuation.session_id == session_id and continuation.status == ContinuationStatus.PENDING:
                continuation.status = ContinuationStatus.CANCELLED
                cancelled += 1
        return cancelled

    async def record_processed_event(self, processed_event):
        key = (processed_event.conversation_id, processed_event.provider_message_id)
        if key in self.processed_events:
            return False
        self.processed_events.add(key)
        return True

    async def release_processed_event(self, conversation_id, provider_message_id):
        key = (conversation_id, provider_message_id)
        if key not in self.processed_events:
            return False
        self.processed_events.discard(key)
        return True

    async def save_webhook_message(self, webhook_message):
        stored = webhook_message.model_copy(deep=True)
        stored.id = self._next_id()
        self.webhook_messages[stored.id] = stored
        return stored.model_copy(deep=True)

    async def update_webhook_message(self, webhook_message):
        if webhook_message.id not in self.webhook_messages:
            return None
        self.webhook_messages[webhook_message.id] = webhook_message.model_copy(deep=True)
        return webhook_message

    async def save_session_transaction(self, transaction):
        stored = transaction.model_copy(deep=True)
        stored.id = self._next_id()
        self.session_transactions.append(stored)
        return stored.model_copy(deep=True)

    async def get_transaction_counts_by_node(self, flow_id, version=None):
        counts: Dict[str, int] = {}
        for transaction in self.session_transactions:
            if transaction.flow_id != flow_id:
                continue
            if version is not None and transaction.flow_version != version:
                continue
            counts[transaction.node_id] = counts.get(transaction.node_id, 0) + 1
        return counts

    # Test helpers
    def pending_continuations(self, session_id: Optional[str] = None):
        return [
            continuation for continuation in self.continuations.values()
            if continuation.status == ContinuationStatus.PENDING
            and (session_id is None or continuation.session_id == session_id)
        ]


class FakeDispatcher:
    """
    Records every rendered message. Fails the next `fail_times` sends.
    """

    def __init__(self):
        self.sent = []
        self.fail_times = 0

    async def send(self, conversation_id, rendered_message, account_id=None):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DispatchException(message="transport unavailable")
        self.sent.append((conversation_id, rendered_message))
        return f"delivery-{len(self.sent)}"

    @property
    def texts(self) -> List[Optional[str]]:
        return [message.text for _, message in self.sent]

    @property
    def messages(self):
        return [message for _, message in self.sent]


@pytest.fixture
def log_util():
    return LogUtil(logger_name="convoflow_engine_test")


@pytest.fixture
def environment_utils(log_util):
    environment_utils = EnvironmentUtils(log_util=log_util)
    environment_utils.env_variables["CONVERSATION_SERVICE_URL"] = ""
    environment_utils.env_variables["ACCOUNT_SERVICE_URL"] = ""
    return environment_utils


@pytest.fixture
def flow_db():
    return InMemoryFlowDB()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


def build_engine(log_util, environment_utils, flow_db, dispatcher) -> SimpleNamespace:
    field_mapper_service = FieldMapperService(log_util=log_util, flow_db=flow_db)
    flow_service = FlowService(log_util=log_util, flow_db=flow_db, field_mapper_service=field_mapper_service)
    session_service = SessionService(log_util=log_util, flow_db=flow_db)
    session_transaction_service = SessionTransactionService(log_util=log_util, flow_db=flow_db)
    conversation_service = ConversationService(log_util=log_util, environment_utils=environment_utils)
    event_normalizer_service = EventNormalizerService(
        log_util=log_util,
        flow_db=flow_db,
        session_service=session_service,
        conversation_service=conversation_service
    )
    interpreter = FlowInterpreterService(
        log_util=log_util,
        environment_utils=environment_utils,
        session_service=session_service,
        field_mapper_service=field_mapper_service,
        condition_service=ConditionService(log_util=log_util),
        reply_validation_service=ReplyValidationService(log_util=log_util),
        message_dispatcher_service=dispatcher,
        session_transaction_service=session_transaction_service
    )
    trigger_service = TriggerService(log_util=log_util, flow_service=flow_service)
    webhook_service = WebhookService(
        log_util=log_util,
        flow_db=flow_db,
        flow_service=flow_service,
        session_service=session_service,
        event_normalizer_service=event_normalizer_service,
        trigger_service=trigger_service,
        flow_interpreter_service=interpreter,
        lock_manager=ConversationLockManager(),
        continuation_retry_limit=environment_utils.get_env_variable("ENGINE_CONTINUATION_RETRY_LIMIT")
    )
    scheduler = ContinuationSchedulerService(
        log_util=log_util,
        flow_db=flow_db,
        webhook_service=webhook_service,
        check_interval_seconds=1
    )
    return SimpleNamespace(
        log_util=log_util,
        environment_utils=environment_utils,
        flow_db=flow_db,
        dispatcher=dispatcher,
        field_mapper_service=field_mapper_service,
        flow_service=flow_service,
        session_service=session_service,
        session_transaction_service=session_transaction_service,
        event_normalizer_service=event_normalizer_service,
        interpreter=interpreter,
        trigger_service=trigger_service,
        webhook_service=webhook_service,
        scheduler=scheduler
    )


@pytest.fixture
def engine(log_util, environment_utils, flow_db, dispatcher):
    return build_engine(log_util, environment_utils, flow_db, dispatcher)


# Payload builders (WhatsApp Cloud envelope)

def whatsapp_payload(messages: List[Dict[str, Any]], phone_number_id: str = PHONE_NUMBER_ID) -> Dict[str, Any]:
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "15550000000", "phone_number_id": phone_number_id},
                    "messages": messages
                }
            }]
        }]
    }


def text_message(message_id: str, body: str, contact: str = CONTACT) -> Dict[str, Any]:
    return {"id": message_id, "from": contact, "type": "text", "text": {"body": body}}


def button_message(message_id: str, button_id: str, title: str, contact: str = CONTACT) -> Dict[str, Any]:
    return {
        "id": message_id,
        "from": contact,
        "type": "interactive",
        "interactive": {"type": "button_reply", "button_reply": {"id": button_id, "title": title}}
    }


def form_message(message_id: str, session_token: Optional[str], fields: Dict[str, Any], contact: str = CONTACT) -> Dict[str, Any]:
    response = dict(fields)
    if session_token is not None:
        response["flow_token"] = session_token
    return {
        "id": message_id,
        "from": contact,
        "type": "interactive",
        "interactive": {
            "type": "nfm_reply",
            "nfm_reply": {"name": "flow", "body": "Sent", "response_json": json.dumps(response)}
        }
    }


# Graph builders

def node(node_id: str, node_type: str, **properties) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, **properties}


def edge(source: str, target: str, discriminator: Optional[str] = None, edge_id: Optional[str] = None) -> EdgeRequest:
    return EdgeRequest(
        id=edge_id or f"{source}->{target}:{discriminator or ''}",
        sourceNodeId=source,
        targetNodeId=target,
        discriminator=discriminator
    )


def yes_no_graph(timeout: Optional[int] = 300, with_false_edge: bool = True, timeout_target: Optional[str] = None):
    """
    trigger -> sendMessage("Hi") -> waitForReply -> condition(equals "yes")
    -> {true: sendMessage("Thanks"), false: sendMessage("Ok")}
    """
    nodes = [
        node("trigger", "trigger"),
        node("hi", "sendMessage", content="Hi"),
        node("wait", "waitForReply", timeout=timeout, variableName="answer"),
        node("check", "condition", operator="equals", compareValue="yes"),
        node("thanks", "sendMessage", content="Thanks"),
        node("ok", "sendMessage", content="Ok"),
    ]
    edges = [
        edge("trigger", "hi"),
        edge("hi", "wait"),
        edge("wait", "check"),
        edge("check", "thanks", "true"),
    ]
    if with_false_edge:
        edges.append(edge("check", "ok", "false"))
    if timeout_target:
        nodes.append(node(timeout_target, "sendMessage", content="Are you still there?"))
        edges.append(edge("wait", timeout_target, "timeout"))
    return nodes, edges


async def create_published_flow(flow_service: FlowService, nodes, edges, name: str = "Flow", account_id: str = ACCOUNT_ID):
    flow = await flow_service.create_flow(account_id, FlowCreateRequest(name=name, nodes=nodes, edges=edges))
    flow_version = await flow_service.publish(flow.flow_id, account_id=account_id)
    assert flow_version.status == FlowStatus.PUBLISHED
    return flow_version
