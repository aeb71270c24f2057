"""
Continuation Scheduler Service
Background service that replays expired waits, delays and dispatch retries
as timeout events through the normal webhook event path.
"""
import asyncio
import traceback
from datetime import datetime
from typing import Optional, TYPE_CHECKING

from utils.log_utils import LogUtil
from database.flow_db import FlowDB
from models.continuation_data import ContinuationData
from models.inbound_event import InboundEvent, EventKind

if TYPE_CHECKING:
    from services.webhook_service import WebhookService


def continuation_message_id(continuation_id: str) -> str:
    return f"continuation:{continuation_id}"


class ContinuationSchedulerService:
    """
    Periodic sweep over pending continuations. A sweep that overlaps another
    is harmless: the replayed event carries a stable provider message id and
    is deduplicated like any webhook delivery.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        webhook_service: Optional["WebhookService"] = None,
        check_interval_seconds: int = 20
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.webhook_service = webhook_service
        self.check_interval_seconds = check_interval_seconds
        self._running = False
        self._task = None

    async def start(self):
        """
        Start the background scheduler task.
        """
        if self._running:
            self.log_util.warning(
                service_name="ContinuationSchedulerService",
                message="Scheduler is already running"
            )
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        self.log_util.info(
            service_name="ContinuationSchedulerService",
            message=f"Continuation scheduler started, checking every {self.check_interval_seconds} seconds"
        )

    async def stop(self):
        """
        Stop the background scheduler task.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.log_util.info(
            service_name="ContinuationSchedulerService",
            message="Continuation scheduler stopped"
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def _scheduler_loop(self):
        while self._running:
            try:
                await self.process_due_continuations()
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_util.error(
                    service_name="ContinuationSchedulerService",
                    message=f"Error in scheduler loop: {str(e)}"
                )
                self.log_util.error(
                    service_name="ContinuationSchedulerService",
                    message=f"Traceback: {traceback.format_exc()}"
                )
                # Wait before retrying to avoid tight error loop
                await asyncio.sleep(self.check_interval_seconds)

    def to_timeout_event(self, continuation: ContinuationData) -> InboundEvent:
        return InboundEvent(
            conversation_id=continuation.conversation_id,
            account_id=continuation.account_id,
            provider_message_id=continuation_message_id(continuation.continuation_id),
            kind=EventKind.TIMEOUT,
            payload={
                "continuation_id": continuation.continuation_id,
                "continuation_kind": continuation.kind.value,
                "node_id": continuation.node_id,
                "attempts": continuation.attempts
            },
            session_id=continuation.session_id
        )

    async def process_due_continuations(self, now: Optional[datetime] = None) -> int:
        """
        One sweep. Returns the number of continuations replayed.
        """
        if not self.webhook_service:
            self.log_util.error(
                service_name="ContinuationSchedulerService",
                message="WebhookService not initialized, cannot replay continuations"
            )
            return 0

        due = await self.flow_db.get_due_continuations(now or datetime.utcnow())
        if not due:
            return 0

        self.log_util.info(
            service_name="ContinuationSchedulerService",
            message=f"Found {len(due)} due continuation(s) to process"
        )

        processed = 0
        for continuation in due:
            try:
                result = await self.webhook_service.process_inbound_event(self.to_timeout_event(continuation))
            except Exception as e:
                self.log_util.error(
                    service_name="ContinuationSchedulerService",
                    message=f"Error processing continuation {continuation.continuation_id}: {str(e)}"
                )
                continue

            await self.flow_db.mark_continuation_fired(continuation.continuation_id)
            processed += 1
            self.log_util.info(
                service_name="ContinuationSchedulerService",
                message=f"Continuation {continuation.continuation_id} ({continuation.kind.value}) of session {continuation.session_id}: {result}"
            )
        return processed
