"""
Trigger Service
Chooses which published flow a conversation without an active session should start.
"""
from typing import Optional, List

from utils.log_utils import LogUtil
from services.flow_service import FlowService
from models.flow_data import FlowVersionData
from models.inbound_event import InboundEvent, EventKind
from exceptions.flow_exception import FlowNotFoundException

TRIGGERING_KINDS = (EventKind.TEXT, EventKind.BUTTON_REPLY, EventKind.LIST_REPLY)


def normalize_keywords(keywords: List[str]) -> List[str]:
    return [keyword.strip().lower() for keyword in keywords if keyword and keyword.strip()]


class TriggerService:
    def __init__(self, log_util: LogUtil, flow_service: FlowService):
        self.log_util = log_util
        self.flow_service = flow_service

    async def find_flow(self, account_id: Optional[str], event: InboundEvent) -> Optional[FlowVersionData]:
        """
        Keyword triggers match the whole reply case-insensitively and win over
        catch-all triggers (no keywords). Among equals the oldest flow wins.
        Timer ticks and form replies never start a flow.
        """
        if not account_id or event.kind not in TRIGGERING_KINDS:
            return None

        reply = (event.reply_text or "").strip().lower()
        catch_all: Optional[FlowVersionData] = None
        for flow in await self.flow_service.get_published_flows(account_id):
            try:
                flow_version = await self.flow_service.get_flow(flow.flow_id, flow.current_version)
            except FlowNotFoundException:
                self.log_util.warning(
                    service_name="TriggerService",
                    message=f"Flow {flow.flow_id} points at missing version {flow.current_version}"
                )
                continue

            trigger = flow_version.graph.trigger_node()
            if trigger is None:
                continue
            keywords = normalize_keywords(trigger.keywords)
            if not keywords:
                if catch_all is None:
                    catch_all = flow_version
                continue
            if reply and reply in keywords:
                self.log_util.info(
                    service_name="TriggerService",
                    message=f"Keyword '{reply}' matched flow {flow.flow_id} v{flow_version.version}"
                )
                return flow_version

        if catch_all is not None:
            self.log_util.info(
                service_name="TriggerService",
                message=f"Catch-all flow {catch_all.flow_id} v{catch_all.version} selected"
            )
        return catch_all
