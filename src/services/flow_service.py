from typing import Optional, List, Dict, Any
from datetime import datetime
import uuid

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Services
from services.field_mapper_service import FieldMapperService
from services.flow_graph_validator import parse_graph

# Models
from models.flow_data import FlowData, FlowVersionData, FlowStatus, FlowEdge, DraftGraph
from models.field_mapping_data import FieldMappingData
from models.request.flow_request import FlowCreateRequest, FlowUpdateRequest, EdgeRequest

# Exceptions
from exceptions.flow_exception import (
    FlowException,
    FlowServiceException,
    FlowNotFoundException,
    FlowValidationException,
)

class FlowService:
    def __init__(self, log_util: LogUtil, flow_db: FlowDB, field_mapper_service: FieldMapperService):
        self.log_util = log_util
        self.flow_db = flow_db
        self.field_mapper_service = field_mapper_service

    def _error(self, action: str, e: Exception) -> FlowServiceException:
        self.log_util.error(
            service_name="FlowService",
            message=f"Error {action}: {str(e)}"
        )
        return FlowServiceException(message=f"Error {action}: {str(e)}")

    async def _get_owned_flow(self, flow_id: str, account_id: Optional[str] = None) -> FlowData:
        """
        Load a flow header. A flow of another account is reported as not found.
        """
        flow = await self.flow_db.get_flow(flow_id)
        if flow is None or (account_id is not None and flow.account_id != account_id):
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")
        return flow

    def _to_edge(self, flow: FlowData, edge_request: EdgeRequest) -> FlowEdge:
        """
        Build a draft edge and stamp it with the flow's next creation sequence.
        """
        edge = FlowEdge(
            id=edge_request.id or uuid.uuid4().hex,
            sourceNodeId=edge_request.sourceNodeId,
            targetNodeId=edge_request.targetNodeId,
            discriminator=edge_request.discriminator,
            sequence=flow.next_sequence
        )
        flow.next_sequence += 1
        return edge

    @staticmethod
    def _find_node_index(draft: DraftGraph, node_id: str) -> Optional[int]:
        for index, node in enumerate(draft.nodes):
            if node.get("id") == node_id:
                return index
        return None

    @staticmethod
    def _find_edge_index(draft: DraftGraph, edge_id: str) -> Optional[int]:
        for index, edge in enumerate(draft.edges):
            if edge.id == edge_id:
                return index
        return None

    async def _save_draft(self, flow: FlowData) -> FlowData:
        flow.updated_at = datetime.utcnow()
        updated = await self.flow_db.update_flow(flow)
        if updated is None:
            raise FlowNotFoundException(message=f"Flow {flow.flow_id} not found")
        return updated

    async def create_flow(self, account_id: str, request: FlowCreateRequest) -> FlowData:
        """
        Create a new flow. Status stays draft until the first publish.
        """
        try:
            flow = FlowData(
                flow_id=uuid.uuid4().hex,
                account_id=account_id,
                name=request.name,
                status=FlowStatus.DRAFT,
                draft=DraftGraph(nodes=list(request.nodes))
            )
            flow.draft.edges = [self._to_edge(flow, edge) for edge in request.edges]

            saved_flow = await self.flow_db.create_flow(flow)
            self.log_util.info(
                service_name="FlowService",
                message=f"Flow '{flow.name}' created with ID: {saved_flow.flow_id}"
            )
            return saved_flow
        except FlowException:
            raise
        except Exception as e:
            raise self._error("creating flow", e)

    async def list_flows(self, account_id: str) -> List[FlowData]:
        try:
            flows = await self.flow_db.get_flows(account_id)
            return flows or []
        except FlowException:
            raise
        except Exception as e:
            raise self._error("getting flows list", e)

    async def get_flow_detail(self, flow_id: str, account_id: Optional[str] = None) -> FlowData:
        """
        Flow header plus the editable draft
        """
        return await self._get_owned_flow(flow_id, account_id)

    async def update_flow(self, flow_id: str, request: FlowUpdateRequest, account_id: Optional[str] = None) -> FlowData:
        """
        Rename and/or replace the draft. Published versions are untouched.
        """
        try:
            flow = await self._get_owned_flow(flow_id, account_id)
            if request.name is not None:
                flow.name = request.name
            if request.nodes is not None:
                flow.draft.nodes = list(request.nodes)
            if request.edges is not None:
                flow.draft.edges = [self._to_edge(flow, edge) for edge in request.edges]
            return await self._save_draft(flow)
        except FlowException:
            raise
        except Exception as e:
            raise self._error("updating flow", e)

    async def add_node(self, flow_id: str, node: Dict[str, Any], account_id: Optional[str] = None) -> FlowData:
        flow = await self._get_owned_flow(flow_id, account_id)
        node = dict(node)
        node.setdefault("id", uuid.uuid4().hex)
        if self._find_node_index(flow.draft, node["id"]) is not None:
            raise FlowValidationException(
                message=f"Node {node['id']} already exists",
                errors=[f"duplicate node id '{node['id']}'"]
            )
        flow.draft.nodes.append(node)
        return await self._save_draft(flow)

    async def update_node(self, flow_id: str, node_id: str, updates: Dict[str, Any], account_id: Optional[str] = None) -> FlowData:
        flow = await self._get_owned_flow(flow_id, account_id)
        index = self._find_node_index(flow.draft, node_id)
        if index is None:
            raise FlowNotFoundException(message=f"Node {node_id} not found in flow {flow_id}")
        merged = {**flow.draft.nodes[index], **updates}
        merged["id"] = node_id  # node ids are immutable
        flow.draft.nodes[index] = merged
        return await self._save_draft(flow)

    async def delete_node(self, flow_id: str, node_id: str, account_id: Optional[str] = None) -> FlowData:
        """
        Remove a node and every edge touching it
        """
        flow = await self._get_owned_flow(flow_id, account_id)
        index = self._find_node_index(flow.draft, node_id)
        if index is None:
            raise FlowNotFoundException(message=f"Node {node_id} not found in flow {flow_id}")
        del flow.draft.nodes[index]
        before = len(flow.draft.edges)
        flow.draft.edges = [
            edge for edge in flow.draft.edges
            if edge.sourceNodeId != node_id and edge.targetNodeId != node_id
        ]
        self.log_util.info(
            service_name="FlowService",
            message=f"Deleted node {node_id} from flow {flow_id} with {before - len(flow.draft.edges)} edge(s)"
        )
        return await self._save_draft(flow)

    async def add_edge(self, flow_id: str, edge_request: EdgeRequest, account_id: Optional[str] = None) -> FlowData:
        flow = await self._get_owned_flow(flow_id, account_id)
        errors = [
            f"node '{node_id}' does not exist"
            for node_id in (edge_request.sourceNodeId, edge_request.targetNodeId)
            if self._find_node_index(flow.draft, node_id) is None
        ]
        if edge_request.id and self._find_edge_index(flow.draft, edge_request.id) is not None:
            errors.append(f"duplicate edge id '{edge_request.id}'")
        if errors:
            raise FlowValidationException(message="Edge cannot be added", errors=errors)
        flow.draft.edges.append(self._to_edge(flow, edge_request))
        return await self._save_draft(flow)

    async def update_edge(self, flow_id: str, edge_id: str, edge_request: EdgeRequest, account_id: Optional[str] = None) -> FlowData:
        """
        Re-point or relabel an edge. Its creation sequence is kept.
        """
        flow = await self._get_owned_flow(flow_id, account_id)
        index = self._find_edge_index(flow.draft, edge_id)
        if index is None:
            raise FlowNotFoundException(message=f"Edge {edge_id} not found in flow {flow_id}")
        existing = flow.draft.edges[index]
        flow.draft.edges[index] = FlowEdge(
            id=edge_id,
            sourceNodeId=edge_request.sourceNodeId,
            targetNodeId=edge_request.targetNodeId,
            discriminator=edge_request.discriminator,
            sequence=existing.sequence
        )
        return await self._save_draft(flow)

    async def delete_edge(self, flow_id: str, edge_id: str, account_id: Optional[str] = None) -> FlowData:
        flow = await self._get_owned_flow(flow_id, account_id)
        index = self._find_edge_index(flow.draft, edge_id)
        if index is None:
            raise FlowNotFoundException(message=f"Edge {edge_id} not found in flow {flow_id}")
        del flow.draft.edges[index]
        return await self._save_draft(flow)

    async def publish(self, flow_id: str, account_id: Optional[str] = None) -> FlowVersionData:
        """
        Validate the draft and freeze it as the next published version.

        Nothing is written when validation fails. The new version only becomes
        current once its snapshot, its field mappings and the flow header are
        all written. A partial publish is discarded; a snapshot that could not
        be discarded keeps its number and the next publish skips past it.
        """
        try:
            flow = await self._get_owned_flow(flow_id, account_id)
            graph, warnings = parse_graph(flow.draft)
            for warning in warnings:
                self.log_util.warning(
                    service_name="FlowService",
                    message=f"Flow {flow_id}: {warning}"
                )

            previous_version = flow.current_version
            latest_version = await self.flow_db.get_latest_flow_version_number(flow.flow_id)
            version = max(latest_version or 0, previous_version or 0) + 1
            flow_version = await self.flow_db.save_flow_version(FlowVersionData(
                flow_id=flow.flow_id,
                account_id=flow.account_id,
                name=flow.name,
                version=version,
                status=FlowStatus.PUBLISHED,
                graph=graph
            ))
            try:
                await self.field_mapper_service.publish_field_mappings(flow.flow_id, version, graph)

                flow.current_version = version
                flow.status = FlowStatus.PUBLISHED
                await self._save_draft(flow)
            except Exception:
                await self._discard_version(flow.flow_id, version)
                raise

            if previous_version is not None:
                await self.flow_db.update_flow_version_status(flow.flow_id, previous_version, FlowStatus.DEPRECATED)

            self.log_util.info(
                service_name="FlowService",
                message=f"Flow {flow_id} published as version {version}"
            )
            return flow_version
        except FlowException:
            raise
        except Exception as e:
            raise self._error("publishing flow", e)

    async def _discard_version(self, flow_id: str, version: int) -> None:
        try:
            await self.flow_db.delete_field_mappings(flow_id, version)
            await self.flow_db.delete_flow_version(flow_id, version)
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error discarding partial version {version} of flow {flow_id}: {str(e)}"
            )

    async def get_flow(self, flow_id: str, version: Optional[int] = None) -> FlowVersionData:
        """
        Get a published snapshot. Defaults to the current published version.
        Deprecated versions stay readable so pinned sessions can finish.
        """
        if version is None:
            flow = await self.flow_db.get_flow(flow_id)
            if flow is None or flow.current_version is None:
                raise FlowNotFoundException(message=f"Flow {flow_id} has no published version")
            version = flow.current_version

        flow_version = await self.flow_db.get_flow_version(flow_id, version)
        if flow_version is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} version {version} not found")
        return flow_version

    async def set_flow_active(self, flow_id: str, is_active: bool, account_id: Optional[str] = None) -> FlowData:
        """
        Deactivation only blocks new session starts; running sessions continue.
        """
        flow = await self._get_owned_flow(flow_id, account_id)
        flow.is_active = is_active
        updated = await self._save_draft(flow)
        self.log_util.info(
            service_name="FlowService",
            message=f"Flow {flow_id} is_active set to {is_active}"
        )
        return updated

    async def get_field_mappings(self, flow_id: str, version: Optional[int] = None, account_id: Optional[str] = None) -> List[FieldMappingData]:
        flow = await self._get_owned_flow(flow_id, account_id)
        if version is None:
            version = flow.current_version
        if version is None:
            return []
        return await self.flow_db.get_field_mappings(flow_id, version)

    async def get_published_flows(self, account_id: str) -> List[FlowData]:
        """
        Active flows of an account that have a published version, oldest first
        """
        flows = await self.list_flows(account_id)
        return [flow for flow in flows if flow.is_active and flow.current_version is not None]
