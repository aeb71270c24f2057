from typing import Optional, Dict, Any
from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_service import FlowService
from services.session_transaction_service import SessionTransactionService

# Models
from models.request.flow_request import FlowCreateRequest, FlowUpdateRequest, FlowStatusRequest, EdgeRequest

# Exceptions
from exceptions.flow_exception import FlowException, FlowValidationException

def create_flow_api(
    log_util: LogUtil,
    flow_service: FlowService,
    session_transaction_service: SessionTransactionService
) -> APIRouter:
    router = APIRouter(
        prefix="/flow",
        tags=["flow"],
    )

    def get_account_id(request: Request) -> str:
        account_id = request.headers.get("x-account-id")
        if not account_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return account_id

    def to_http_exception(action: str, e: Exception) -> HTTPException:
        log_util.error(service_name="FlowAPI", message=f"Error {action}: {e}")
        if isinstance(e, FlowValidationException):
            return HTTPException(status_code=e.status_code, detail={"message": e.message, "errors": e.errors})
        if isinstance(e, FlowException):
            return HTTPException(status_code=e.status_code, detail=e.message)
        return HTTPException(status_code=500, detail=str(e))

    @router.post("/create")
    async def create_flow(request: Request, flow_request: FlowCreateRequest):
        account_id = get_account_id(request)
        try:
            return await flow_service.create_flow(account_id=account_id, request=flow_request)
        except Exception as e:
            raise to_http_exception("creating flow", e)

    @router.get("/list")
    async def get_flows_list(request: Request):
        account_id = get_account_id(request)
        try:
            return await flow_service.list_flows(account_id=account_id)
        except Exception as e:
            raise to_http_exception("getting flows list", e)

    @router.get("/detail/{flow_id}")
    async def get_flow_detail(request: Request, flow_id: str):
        account_id = get_account_id(request)
        try:
            return await flow_service.get_flow_detail(flow_id=flow_id, account_id=account_id)
        except Exception as e:
            raise to_http_exception("getting flow detail", e)

    @router.put("/update/{flow_id}")
    async def update_flow(request: Request, flow_id: str, flow_request: FlowUpdateRequest):
        account_id = get_account_id(request)
        try:
            return await flow_service.update_flow(flow_id=flow_id, request=flow_request, account_id=account_id)
        except Exception as e:
            raise to_http_exception("updating flow", e)

    @router.post("/{flow_id}/nodes")
    async def add_node(request: Request, flow_id: str, node: Dict[str, Any]):
        account_id = get_account_id(request)
        try:
            return await flow_service.add_node(flow_id=flow_id, node=node, account_id=account_id)
        except Exception as e:
            raise to_http_exception("adding node", e)

    @router.put("/{flow_id}/nodes/{node_id}")
    async def update_node(request: Request, flow_id: str, node_id: str, updates: Dict[str, Any]):
        account_id = get_account_id(request)
        try:
            return await flow_service.update_node(flow_id=flow_id, node_id=node_id, updates=updates, account_id=account_id)
        except Exception as e:
            raise to_http_exception("updating node", e)

    @router.delete("/{flow_id}/nodes/{node_id}")
    async def delete_node(request: Request, flow_id: str, node_id: str):
        account_id = get_account_id(request)
        try:
            return await flow_service.delete_node(flow_id=flow_id, node_id=node_id, account_id=account_id)
        except Exception as e:
            raise to_http_exception("deleting node", e)

    @router.post("/{flow_id}/edges")
    async def add_edge(request: Request, flow_id: str, edge: EdgeRequest):
        account_id = get_account_id(request)
        try:
            return await flow_service.add_edge(flow_id=flow_id, edge_request=edge, account_id=account_id)
        except Exception as e:
            raise to_http_exception("adding edge", e)

    @router.put("/{flow_id}/edges/{edge_id}")
    async def update_edge(request: Request, flow_id: str, edge_id: str, edge: EdgeRequest):
        account_id = get_account_id(request)
        try:
            return await flow_service.update_edge(flow_id=flow_id, edge_id=edge_id, edge_request=edge, account_id=account_id)
        except Exception as e:
            raise to_http_exception("updating edge", e)

    @router.delete("/{flow_id}/edges/{edge_id}")
    async def delete_edge(request: Request, flow_id: str, edge_id: str):
        account_id = get_account_id(request)
        try:
            return await flow_service.delete_edge(flow_id=flow_id, edge_id=edge_id, account_id=account_id)
        except Exception as e:
            raise to_http_exception("deleting edge", e)

    @router.post("/{flow_id}/publish")
    async def publish_flow(request: Request, flow_id: str):
        account_id = get_account_id(request)
        try:
            return await flow_service.publish(flow_id=flow_id, account_id=account_id)
        except Exception as e:
            raise to_http_exception("publishing flow", e)

    @router.put("/{flow_id}/status")
    async def set_flow_status(request: Request, flow_id: str, status_request: FlowStatusRequest):
        account_id = get_account_id(request)
        try:
            return await flow_service.set_flow_active(flow_id=flow_id, is_active=status_request.is_active, account_id=account_id)
        except Exception as e:
            raise to_http_exception("updating flow status", e)

    @router.get("/{flow_id}/published")
    async def get_published_flow(request: Request, flow_id: str, version: Optional[int] = None):
        """
        Published snapshot; the current version unless one is given
        """
        account_id = get_account_id(request)
        try:
            await flow_service.get_flow_detail(flow_id=flow_id, account_id=account_id)
            return await flow_service.get_flow(flow_id=flow_id, version=version)
        except Exception as e:
            raise to_http_exception("getting published flow", e)

    @router.get("/{flow_id}/field-mappings")
    async def get_field_mappings(request: Request, flow_id: str, version: Optional[int] = None):
        account_id = get_account_id(request)
        try:
            return await flow_service.get_field_mappings(flow_id=flow_id, version=version, account_id=account_id)
        except Exception as e:
            raise to_http_exception("getting field mappings", e)

    @router.get("/{flow_id}/analytics")
    async def get_flow_analytics(request: Request, flow_id: str, version: Optional[int] = None):
        account_id = get_account_id(request)
        try:
            await flow_service.get_flow_detail(flow_id=flow_id, account_id=account_id)
            return await session_transaction_service.get_flow_analytics(flow_id=flow_id, version=version)
        except Exception as e:
            raise to_http_exception("getting flow analytics", e)

    return router
