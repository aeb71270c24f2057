from typing import Optional, List
from datetime import datetime
import secrets
import uuid

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Models
from models.session_data import SessionData, SessionStatus
from models.continuation_data import ContinuationData, ContinuationKind

# Exceptions
from exceptions.flow_exception import (
    SessionConflictException,
    SessionTokenMismatchException,
    FlowNotFoundException,
    FlowServiceException,
)


class SessionService:
    """
    Owns the per-conversation execution pointer and its lifecycle.
    Only the interpreter and the orchestration layer mutate sessions.
    """

    def __init__(self, log_util: LogUtil, flow_db: FlowDB):
        self.log_util = log_util
        self.flow_db = flow_db

    async def start_session(self, conversation_id: str, account_id: str, flow_id: str, flow_version: int) -> SessionData:
        """
        Create an active session bound to (flow_id, flow_version).

        Raises:
            SessionConflictException: the conversation already has an active session
        """
        existing = await self.flow_db.get_active_session(conversation_id)
        if existing is not None:
            raise SessionConflictException(
                message=f"Conversation {conversation_id} already has active session {existing.session_id}"
            )

        session = SessionData(
            session_id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            account_id=account_id,
            flow_id=flow_id,
            flow_version=flow_version,
            session_token=secrets.token_urlsafe(24),
            status=SessionStatus.ACTIVE
        )
        created = await self.flow_db.create_session(session)
        if created is None:
            # Lost a race against another start for the same conversation
            raise SessionConflictException(
                message=f"Conversation {conversation_id} already has an active session"
            )

        self.log_util.info(
            service_name="SessionService",
            message=f"Session {created.session_id} started for conversation {conversation_id} on flow {flow_id} v{flow_version}"
        )
        return created

    async def get_session(self, session_id: str, account_id: Optional[str] = None) -> SessionData:
        session = await self.flow_db.get_session(session_id)
        if session is None or (account_id is not None and session.account_id != account_id):
            raise FlowNotFoundException(message=f"Session {session_id} not found")
        return session

    async def get_active_session(self, conversation_id: str) -> Optional[SessionData]:
        return await self.flow_db.get_active_session(conversation_id)

    async def get_sessions_by_conversation(self, conversation_id: str, account_id: Optional[str] = None) -> List[SessionData]:
        sessions = await self.flow_db.get_sessions_by_conversation(conversation_id)
        if account_id is None:
            return sessions
        return [session for session in sessions if session.account_id == account_id]

    async def resolve_session_by_token(self, conversation_id: str, session_token: Optional[str]) -> SessionData:
        """
        Match an asynchronous provider response back to the session that issued it.

        Raises:
            SessionTokenMismatchException: no active session, or the token belongs to another run
        """
        session = await self.flow_db.get_active_session(conversation_id)
        if session is None or not session_token or session.session_token != session_token:
            raise SessionTokenMismatchException(
                message=f"Session token does not match the active session of conversation {conversation_id}"
            )
        return session

    async def save(self, session: SessionData) -> SessionData:
        session.updated_at = datetime.utcnow()
        updated = await self.flow_db.update_session(session)
        if updated is None:
            raise FlowServiceException(message=f"Session {session.session_id} could not be saved")
        return updated

    async def _terminate(self, session: SessionData, status: SessionStatus, error: Optional[str] = None) -> SessionData:
        await self.flow_db.cancel_pending_continuations(session.session_id)
        session.status = status
        session.current_node_id = None
        session.pending_continuation_id = None
        session.completed_at = datetime.utcnow()
        if error is not None:
            session.last_error = error
        saved = await self.save(session)
        self.log_util.info(
            service_name="SessionService",
            message=f"Session {session.session_id} ended with status {status.value}"
        )
        return saved

    async def complete(self, session: SessionData) -> SessionData:
        return await self._terminate(session, SessionStatus.COMPLETED)

    async def abandon(self, session: SessionData, reason: Optional[str] = None) -> SessionData:
        return await self._terminate(session, SessionStatus.ABANDONED, reason)

    async def fail(self, session: SessionData, error: str) -> SessionData:
        self.log_util.error(
            service_name="SessionService",
            message=f"Session {session.session_id} failed: {error}"
        )
        return await self._terminate(session, SessionStatus.ERROR, error)

    async def arm_continuation(
        self,
        session: SessionData,
        kind: ContinuationKind,
        node_id: str,
        deadline: Optional[datetime],
        expected_reply_type: Optional[str] = None
    ) -> ContinuationData:
        """
        Persist a pending continuation and point the session at it. Any earlier
        pending continuation of the session is cancelled first.
        """
        await self.flow_db.cancel_pending_continuations(session.session_id)
        continuation = await self.flow_db.save_continuation(ContinuationData(
            continuation_id=uuid.uuid4().hex,
            session_id=session.session_id,
            conversation_id=session.conversation_id,
            account_id=session.account_id,
            flow_id=session.flow_id,
            flow_version=session.flow_version,
            node_id=node_id,
            kind=kind,
            expected_reply_type=expected_reply_type,
            deadline=deadline
        ))
        session.pending_continuation_id = continuation.continuation_id
        return continuation

    async def clear_continuation(self, session: SessionData) -> None:
        if session.pending_continuation_id is None:
            return
        await self.flow_db.cancel_pending_continuations(session.session_id)
        session.pending_continuation_id = None

    async def mark_continuation_fired(self, continuation_id: Optional[str]) -> bool:
        if not continuation_id:
            return False
        return await self.flow_db.mark_continuation_fired(continuation_id)

    async def reopen_continuation(self, continuation_id: Optional[str]) -> bool:
        if not continuation_id:
            return False
        return await self.flow_db.reopen_continuation(continuation_id)
