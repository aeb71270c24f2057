"""
Flow Interpreter Service
State machine that drives one session through its pinned flow graph.

The graph is always passed in by the caller; the interpreter never looks
flows up itself. Nodes that wait (waitForReply, delay, failed dispatch) park
the session on a continuation and return, so no worker is held while the
user is silent.
"""
from datetime import datetime, timedelta
from typing import Optional, List, Union, Any

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Services
from services.session_service import SessionService
from services.field_mapper_service import FieldMapperService
from services.condition_service import ConditionService
from services.reply_validation_service import ReplyValidationService
from services.message_dispatcher_service import MessageDispatcherService
from services.session_transaction_service import SessionTransactionService

# Models
from models.flow_data import (
    FlowGraph,
    FlowEdge,
    NodeType,
    ReplyType,
    SendMessageNode,
    WaitForReplyNode,
    ConditionNode,
    DelayNode,
    TriggerNode,
    TRUE_BRANCH,
    FALSE_BRANCH,
    TIMEOUT_BRANCH,
    RESERVED_DISCRIMINATORS,
)
from models.session_data import SessionData
from models.inbound_event import InboundEvent, EventKind
from models.continuation_data import ContinuationKind
from models.rendered_message import RenderedMessage

# Exceptions
from exceptions.flow_exception import FlowTransitionException, DispatchException, WaitTimeoutException

DEFAULT_REPROMPT = "This is not the valid response. Please try again below"

# Node outcomes besides "next node id" and None (no edge, session completes)
_YIELD = object()
_STOPPED = object()


def select_edge(edges: List[FlowEdge], preferred: Optional[str] = None) -> Optional[FlowEdge]:
    """
    Pick the outgoing edge to follow.

    An edge whose discriminator equals `preferred` (a button or list row id)
    wins. Otherwise edges without a discriminator are preferred, then any
    edge whose discriminator is not reserved. Ties go to the lowest creation
    sequence. Reserved branches ("true", "false", "timeout") are never chosen
    here.
    """
    ordered = sorted(edges, key=lambda edge: edge.sequence)
    if preferred:
        for edge in ordered:
            if edge.discriminator == preferred and preferred not in RESERVED_DISCRIMINATORS:
                return edge
    for edge in ordered:
        if edge.discriminator is None:
            return edge
    for edge in ordered:
        if edge.discriminator not in RESERVED_DISCRIMINATORS:
            return edge
    return None


def find_branch(edges: List[FlowEdge], branch: str) -> Optional[FlowEdge]:
    for edge in sorted(edges, key=lambda edge: edge.sequence):
        if edge.discriminator == branch:
            return edge
    return None


class FlowInterpreterService:
    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        session_service: SessionService,
        field_mapper_service: FieldMapperService,
        condition_service: ConditionService,
        reply_validation_service: ReplyValidationService,
        message_dispatcher_service: MessageDispatcherService,
        session_transaction_service: SessionTransactionService
    ):
        self.log_util = log_util
        self.session_service = session_service
        self.field_mapper_service = field_mapper_service
        self.condition_service = condition_service
        self.reply_validation_service = reply_validation_service
        self.message_dispatcher_service = message_dispatcher_service
        self.session_transaction_service = session_transaction_service
        self.max_steps = int(environment_utils.get_env_variable("ENGINE_MAX_STEPS_PER_EVENT"))
        self.dispatch_retry_limit = int(environment_utils.get_env_variable("ENGINE_DISPATCH_RETRY_LIMIT"))
        self.dispatch_retry_delay_seconds = int(environment_utils.get_env_variable("ENGINE_DISPATCH_RETRY_DELAY_SECONDS"))

    async def start(self, session: SessionData, graph: FlowGraph) -> SessionData:
        """
        Run a freshly created session from its trigger until it parks or ends.
        """
        async def _begin():
            trigger = graph.trigger_node()
            if trigger is None:
                raise FlowTransitionException(message="Flow version has no trigger node")
            return await self._run(session, graph, trigger.id)

        return await self._guard(session, graph, _begin)

    async def handle_event(self, session: SessionData, graph: FlowGraph, event: InboundEvent) -> SessionData:
        """
        Feed one admitted event (reply or timer tick) to an active session.
        """
        if not session.is_active:
            self.log_util.info(
                service_name="FlowInterpreterService",
                message=f"Session {session.session_id} is {session.status.value}, event {event.provider_message_id} ignored"
            )
            return session

        if event.kind == EventKind.TIMEOUT:
            return await self._guard(session, graph, lambda: self._handle_timeout(session, graph, event))
        return await self._guard(session, graph, lambda: self._handle_reply(session, graph, event))

    async def _guard(self, session: SessionData, graph: FlowGraph, step) -> SessionData:
        """
        Structural faults end the session with status error; a wait that
        expires without a timeout edge ends it as abandoned.
        """
        try:
            return await step()
        except FlowTransitionException as e:
            node_id = e.node_id or session.current_node_id
            await self._record(session, graph, node_id, "error", message=e.message)
            return await self.session_service.fail(session, e.message)
        except WaitTimeoutException as e:
            await self._record(session, graph, e.node_id or session.current_node_id, "timeout", message=e.message)
            return await self.session_service.abandon(session, e.message)

    async def _record(self, session: SessionData, graph: FlowGraph, node_id: Optional[str], status: str,
                      value: Any = None, message: Optional[str] = None) -> None:
        if node_id is None:
            return
        node = graph.get_node(node_id)
        node_type = node.type if node is not None else "unknown"
        await self.session_transaction_service.record(
            session, node_id, node_type, processed_status=status, processed_value=value, message=message
        )

    async def _run(self, session: SessionData, graph: FlowGraph, node_id: Optional[str]) -> SessionData:
        """
        Execute nodes starting at node_id until one parks the session or no
        edge applies.
        """
        steps = 0
        current_id = node_id
        while current_id is not None:
            steps += 1
            if steps > self.max_steps:
                raise FlowTransitionException(
                    message=f"Step limit of {self.max_steps} exceeded without waiting for the user",
                    node_id=current_id
                )
            node = graph.get_node(current_id)
            if node is None:
                raise FlowTransitionException(message=f"Node {current_id} does not exist in the flow version", node_id=current_id)

            session.current_node_id = node.id
            await self.session_service.save(session)

            outcome = await self._execute(session, graph, node)
            if outcome is _YIELD:
                await self.session_service.save(session)
                return session
            if outcome is _STOPPED:
                return session
            current_id = outcome

        return await self.session_service.complete(session)

    async def _execute(self, session: SessionData, graph: FlowGraph, node) -> Union[str, None, object]:
        if node.type == NodeType.TRIGGER.value:
            return await self._execute_trigger(session, graph, node)
        if node.type == NodeType.SEND_MESSAGE.value:
            return await self._execute_send_message(session, graph, node)
        if node.type == NodeType.WAIT_FOR_REPLY.value:
            return await self._execute_wait_for_reply(session, graph, node)
        if node.type == NodeType.CONDITION.value:
            return await self._execute_condition(session, graph, node)
        if node.type == NodeType.DELAY.value:
            return await self._execute_delay(session, graph, node)
        raise FlowTransitionException(message=f"Unknown node type {node.type}", node_id=node.id)

    async def _execute_trigger(self, session: SessionData, graph: FlowGraph, node: TriggerNode):
        edge = select_edge(graph.outgoing_edges(node.id))
        if edge is None:
            raise FlowTransitionException(message=f"Trigger {node.id} has no outgoing edge", node_id=node.id)
        await self._record(session, graph, node.id, "success", value=edge.targetNodeId)
        return edge.targetNodeId

    async def render_message(self, session: SessionData, node: SendMessageNode) -> RenderedMessage:
        """
        Render a sendMessage node into a channel-ready message
        """
        if node.interactive is None:
            if node.media is not None:
                return RenderedMessage(
                    type="media", text=node.content, media=node.media,
                    session_token=session.session_token, node_id=node.id
                )
            return RenderedMessage(type="text", text=node.content, session_token=session.session_token, node_id=node.id)

        interactive = node.interactive
        body = {"header": interactive.header, "body": node.content, "footer": interactive.footer}
        if interactive.type == "buttons":
            body["type"] = "button"
            body["buttons"] = [button.model_dump() for button in interactive.buttons]
        elif interactive.type == "list":
            body["type"] = "list"
            body["button"] = interactive.buttonLabel or "Choose"
            body["sections"] = [section.model_dump(exclude_none=True) for section in interactive.sections]
        else:
            field_names = await self.field_mapper_service.get_field_names(session.flow_id, session.flow_version, node.id)
            fields = []
            for component in interactive.components:
                generated_name = field_names.get(component.id)
                if generated_name is None:
                    raise FlowTransitionException(
                        message=f"No field mapping for component {component.id} of node {node.id}",
                        node_id=node.id
                    )
                fields.append({
                    "name": generated_name,
                    "label": component.label,
                    "type": component.type,
                    "required": component.required
                })
            body["type"] = "form"
            body["title"] = interactive.formTitle
            body["flow_token"] = session.session_token
            body["fields"] = fields

        return RenderedMessage(
            type="interactive",
            text=node.content,
            media=node.media,
            interactive={key: value for key, value in body.items() if value is not None},
            session_token=session.session_token,
            node_id=node.id
        )

    async def _execute_send_message(self, session: SessionData, graph: FlowGraph, node: SendMessageNode):
        rendered = await self.render_message(session, node)
        try:
            delivery_id = await self.message_dispatcher_service.send(
                session.conversation_id, rendered, account_id=session.account_id
            )
        except DispatchException as e:
            session.dispatch_attempts += 1
            if session.dispatch_attempts > self.dispatch_retry_limit:
                await self._record(session, graph, node.id, "error", message=e.message)
                await self.session_service.fail(
                    session, f"Dispatch failed after {session.dispatch_attempts} attempt(s): {e.message}"
                )
                return _STOPPED

            deadline = datetime.utcnow() + timedelta(seconds=self.dispatch_retry_delay_seconds)
            await self.session_service.arm_continuation(session, ContinuationKind.DISPATCH_RETRY, node.id, deadline)
            await self._record(session, graph, node.id, "retry", message=e.message)
            self.log_util.warning(
                service_name="FlowInterpreterService",
                message=f"Dispatch for node {node.id} of session {session.session_id} failed (attempt {session.dispatch_attempts}), retry at {deadline.isoformat()}"
            )
            return _YIELD

        session.dispatch_attempts = 0
        await self._record(session, graph, node.id, "success", value=delivery_id)
        edge = select_edge(graph.outgoing_edges(node.id))
        return edge.targetNodeId if edge is not None else None

    async def _arm_wait(self, session: SessionData, node: WaitForReplyNode) -> None:
        deadline = None
        if node.timeout is not None:
            deadline = datetime.utcnow() + timedelta(seconds=node.timeout)
        await self.session_service.arm_continuation(
            session,
            ContinuationKind.WAIT,
            node.id,
            deadline,
            expected_reply_type=node.replyType.value if node.replyType else None
        )

    async def _execute_wait_for_reply(self, session: SessionData, graph: FlowGraph, node: WaitForReplyNode):
        session.invalid_reply_count = 0
        await self._arm_wait(session, node)
        await self._record(session, graph, node.id, "waiting")
        return _YIELD

    async def _execute_condition(self, session: SessionData, graph: FlowGraph, node: ConditionNode):
        result = self.condition_service.evaluate_node(node, session)
        branch = TRUE_BRANCH if result else FALSE_BRANCH
        edge = find_branch(graph.outgoing_edges(node.id), branch)
        if edge is None:
            raise FlowTransitionException(message=f"Condition {node.id} has no '{branch}' edge", node_id=node.id)
        await self._record(session, graph, node.id, "success", value=branch)
        return edge.targetNodeId

    async def _execute_delay(self, session: SessionData, graph: FlowGraph, node: DelayNode):
        deadline = datetime.utcnow() + timedelta(seconds=node.duration_seconds)
        await self.session_service.arm_continuation(session, ContinuationKind.DELAY, node.id, deadline)
        await self._record(session, graph, node.id, "waiting", value=node.duration_seconds)
        return _YIELD

    def _current_node(self, session: SessionData, graph: FlowGraph):
        node = graph.get_node(session.current_node_id)
        if node is None:
            raise FlowTransitionException(
                message=f"Current node {session.current_node_id} does not exist in the flow version",
                node_id=session.current_node_id
            )
        return node

    async def _handle_reply(self, session: SessionData, graph: FlowGraph, event: InboundEvent) -> SessionData:
        node = self._current_node(session, graph)
        if node.type != NodeType.WAIT_FOR_REPLY.value:
            self.log_util.info(
                service_name="FlowInterpreterService",
                message=f"Session {session.session_id} is on {node.type} node {node.id}, reply {event.provider_message_id} ignored"
            )
            return session

        if event.kind == EventKind.FORM_REPLY:
            translation = await self.field_mapper_service.translate_form_reply(
                session.flow_id, session.flow_version, event.payload.get("fields") or {}
            )
            event.unmapped = translation.is_unmapped
            value = translation.values
        else:
            value = event.reply_text
            # Free text is kept verbatim; typed answers are stored in their checked form
            if isinstance(value, str) and node.replyType in (ReplyType.NUMBER, ReplyType.EMAIL):
                value = value.strip()

        check = self.reply_validation_service.validate_reply(node.replyType, event.kind, value)
        if not check["valid"]:
            return await self._handle_invalid_reply(session, graph, node, value, check["error"])

        session.invalid_reply_count = 0
        session.last_reply = value
        if event.kind == EventKind.FORM_REPLY:
            session.form_values.update(value)
        if node.variableName:
            session.variables[node.variableName] = value
        await self.session_service.clear_continuation(session)
        await self._record(
            session, graph, node.id, "success", value=value,
            message="unmapped form fields" if event.unmapped else None
        )

        edge = select_edge(graph.outgoing_edges(node.id), preferred=event.reply_id)
        if edge is None:
            return await self.session_service.complete(session)
        return await self._run(session, graph, edge.targetNodeId)

    async def _handle_invalid_reply(self, session: SessionData, graph: FlowGraph, node: WaitForReplyNode,
                                    value: Any, error: Optional[str]) -> SessionData:
        session.invalid_reply_count += 1
        await self._record(session, graph, node.id, "invalid", value=value, message=error)

        if node.invalidReplyLimit is not None and session.invalid_reply_count > node.invalidReplyLimit:
            return await self.session_service.abandon(
                session, f"Invalid reply limit of {node.invalidReplyLimit} exceeded at node {node.id}"
            )

        prompt = RenderedMessage(
            type="text",
            text=node.content or DEFAULT_REPROMPT,
            session_token=session.session_token,
            node_id=node.id
        )
        try:
            await self.message_dispatcher_service.send(session.conversation_id, prompt, account_id=session.account_id)
        except DispatchException as e:
            # The wait is re-armed either way; the user can still answer
            self.log_util.warning(
                service_name="FlowInterpreterService",
                message=f"Re-prompt for node {node.id} of session {session.session_id} not sent: {e.message}"
            )
        await self._arm_wait(session, node)
        await self.session_service.save(session)
        return session

    async def _handle_timeout(self, session: SessionData, graph: FlowGraph, event: InboundEvent) -> SessionData:
        continuation_id = event.payload.get("continuation_id")
        if continuation_id != session.pending_continuation_id:
            self.log_util.info(
                service_name="FlowInterpreterService",
                message=f"Stale continuation {continuation_id} for session {session.session_id} ignored"
            )
            return session

        node = self._current_node(session, graph)
        kind = event.payload.get("continuation_kind")
        session.pending_continuation_id = None

        if kind == ContinuationKind.DISPATCH_RETRY.value:
            return await self._run(session, graph, node.id)

        if kind == ContinuationKind.DELAY.value:
            await self._record(session, graph, node.id, "success", value="delay_complete")
            edge = select_edge(graph.outgoing_edges(node.id))
            if edge is None:
                return await self.session_service.complete(session)
            return await self._run(session, graph, edge.targetNodeId)

        # Wait expired
        timeout_edge = find_branch(graph.outgoing_edges(node.id), TIMEOUT_BRANCH)
        if timeout_edge is None:
            raise WaitTimeoutException(message=f"No reply before the deadline of node {node.id}", node_id=node.id)
        await self._record(session, graph, node.id, "timeout", value=TIMEOUT_BRANCH)
        return await self._run(session, graph, timeout_edge.targetNodeId)
