"""
Session Transaction Service
Records node executions for operator analytics.
"""
from typing import Optional, Any

from utils.log_utils import LogUtil
from database.flow_db import FlowDB
from models.session_data import SessionData
from models.session_transaction_data import SessionTransactionData
from models.response.flow_analytics_response import FlowAnalyticsResponse


class SessionTransactionService:
    def __init__(self, log_util: LogUtil, flow_db: FlowDB):
        self.log_util = log_util
        self.flow_db = flow_db

    async def record(
        self,
        session: SessionData,
        node_id: str,
        node_type: str,
        processed_status: str = "success",
        processed_value: Optional[Any] = None,
        message: Optional[str] = None
    ) -> Optional[SessionTransactionData]:
        """
        Write one execution row. A failed write is logged and does not stop the session.
        """
        try:
            return await self.flow_db.save_session_transaction(SessionTransactionData(
                session_id=session.session_id,
                conversation_id=session.conversation_id,
                flow_id=session.flow_id,
                flow_version=session.flow_version,
                node_id=node_id,
                node_type=node_type,
                processed_status=processed_status,
                processed_value=processed_value,
                message=message
            ))
        except Exception as e:
            self.log_util.error(
                service_name="SessionTransactionService",
                message=f"Error saving transaction for node {node_id} of session {session.session_id}: {str(e)}"
            )
            return None

    async def get_flow_analytics(self, flow_id: str, version: Optional[int] = None) -> FlowAnalyticsResponse:
        node_counts = await self.flow_db.get_transaction_counts_by_node(flow_id, version)
        session_counts = await self.flow_db.get_session_counts_by_status(flow_id)
        return FlowAnalyticsResponse(
            flow_id=flow_id,
            version=version,
            node_counts=node_counts,
            session_counts=session_counts
        )
