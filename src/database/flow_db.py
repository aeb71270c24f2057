from motor.motor_asyncio import AsyncIOMotorClient
import urllib.parse
import threading
import asyncio
from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime
import weakref
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure, DuplicateKeyError
from pydantic import BaseModel

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import FlowDBException

# Models
from models.flow_data import FlowData, FlowVersionData, FlowStatus
from models.field_mapping_data import FieldMappingData
from models.session_data import SessionData, SessionStatus
from models.continuation_data import ContinuationData, ContinuationStatus
from models.inbound_event import ProcessedEventData
from models.webhook_message_data import WebhookMessageData
from models.session_transaction_data import SessionTransactionData

"""
Database class for flow engine operations
"""
class FlowDB:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo credentials
        self.username = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_USERNAME"))
        self.password = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_PASSWORD"))
        self.auth_source = self.environment_utils.get_env_variable("MONGO_AUTH_SOURCE")
        self.host = self.environment_utils.get_env_variable("MONGO_HOST")
        self.port = int(self.environment_utils.get_env_variable("MONGO_PORT"))
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0  # Create connections on-demand instead of at startup
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # MongoDB clients keyed by event loop ID to support multiple event loops
        self._clients = {}  # {loop_id: {client, db, collections, loop}}

        # Thread-safe initialization lock
        self._client_lock = threading.Lock()

    def _connection_uri(self) -> str:
        if self.username:
            return f"mongodb://{self.username}:{self.password}@{self.host}:{self.port}/?authSource={self.auth_source}"
        return f"mongodb://{self.host}:{self.port}/"

    def _get_client_for_current_loop(self):
        """
        Thread-safe method to get the MongoDB client and collections for the current event loop.
        Each event loop gets its own client instance; motor clients are bound to the loop they were created on.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)

        if loop_id in self._clients:
            return self._clients[loop_id]

        with self._client_lock:
            # Double-check after acquiring lock (another thread might have created it)
            if loop_id in self._clients:
                return self._clients[loop_id]

            client = AsyncIOMotorClient(
                self._connection_uri(),
                maxPoolSize=self.max_pool_size,
                minPoolSize=self.min_pool_size,
                maxIdleTimeMS=self.max_idle_time_ms,
                waitQueueTimeoutMS=self.wait_queue_timeout_ms,
                connectTimeoutMS=self.connect_timeout_ms,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                retryWrites=True,
                retryReads=True
            )
            db = client[self.db_name]

            client_data = {
                'client': client,
                'db': db,
                'collections': self._initialize_collections_for_client(db),
                'loop': weakref.ref(loop)  # Weak reference to avoid circular references
            }
            self._clients[loop_id] = client_data

            self.log_util.info(
                service_name="FlowDB",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )

            return client_data

    def _initialize_collections_for_client(self, db):
        """
        Initialize MongoDB collections for a given database instance
        Returns a dictionary of collections
        """
        return {
            'flows': db.flows,
            'flow_versions': db.flow_versions,
            'field_mappings': db.field_mappings,
            'sessions': db.sessions,
            'continuations': db.continuations,
            'processed_events': db.processed_events,
            'webhook_messages': db.webhook_messages,
            'session_transactions': db.session_transactions
        }

    def _collection(self, name: str):
        return self._get_client_for_current_loop()['collections'][name]

    def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="FlowDB",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )
            self._clients.clear()
            self.log_util.info(
                service_name="FlowDB",
                message="All MongoDB clients closed"
            )

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Handle database operation errors with appropriate logging and exception wrapping.

        Args:
            operation_name: Name of the operation that failed
            error: The exception that occurred
        """
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="FlowDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise FlowDBException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        self.log_util.error(
            service_name="FlowDB",
            message=f"Error in {operation_name}: {str(error)}"
        )
        raise FlowDBException(
            message=f"Database error: {str(error)}",
            status_code=500
        )

    @staticmethod
    def _to_document(model: BaseModel) -> Dict[str, Any]:
        """
        Dump a model for storage: drops the string id and turns enums into their values.
        """
        def _plain(value):
            if isinstance(value, Enum):
                return value.value
            if isinstance(value, dict):
                return {key: _plain(item) for key, item in value.items()}
            if isinstance(value, list):
                return [_plain(item) for item in value]
            return value
        return _plain(model.model_dump(exclude={"id"}))

    @staticmethod
    def _from_document(document: Dict[str, Any]) -> Dict[str, Any]:
        document["id"] = str(document.pop("_id"))
        return document

    async def ensure_indexes(self) -> None:
        """
        Create the indexes the engine's invariants rely on. Safe to run repeatedly.
        """
        try:
            await self._collection('flows').create_index([("flow_id", ASCENDING)], unique=True)
            await self._collection('flows').create_index([("account_id", ASCENDING)])
            await self._collection('flow_versions').create_index(
                [("flow_id", ASCENDING), ("version", ASCENDING)], unique=True
            )
            await self._collection('field_mappings').create_index(
                [("flow_id", ASCENDING), ("version", ASCENDING), ("generated_field_name", ASCENDING)], unique=True
            )
            await self._collection('sessions').create_index([("session_id", ASCENDING)], unique=True)
            await self._collection('sessions').create_index([("session_token", ASCENDING)], unique=True)
            # At most one active session per conversation
            await self._collection('sessions').create_index(
                [("conversation_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"status": SessionStatus.ACTIVE.value},
                name="one_active_session_per_conversation"
            )
            await self._collection('continuations').create_index([("continuation_id", ASCENDING)], unique=True)
            await self._collection('continuations').create_index([("status", ASCENDING), ("deadline", ASCENDING)])
            await self._collection('processed_events').create_index(
                [("conversation_id", ASCENDING), ("provider_message_id", ASCENDING)], unique=True
            )
            await self._collection('session_transactions').create_index([("flow_id", ASCENDING), ("node_id", ASCENDING)])
            self.log_util.info(service_name="FlowDB", message="Indexes ensured")
        except Exception as e:
            self._handle_db_operation("ensure_indexes", e)

    # Flow CRUD operations
    async def create_flow(self, flow: FlowData) -> FlowData:
        try:
            flow_dict = self._to_document(flow)
            result = await self._collection('flows').insert_one(flow_dict)
            flow_dict["_id"] = result.inserted_id
            return FlowData.model_validate(self._from_document(flow_dict))
        except Exception as e:
            self._handle_db_operation("create_flow", e)

    async def get_flow(self, flow_id: str) -> Optional[FlowData]:
        """
        Get a flow header (with its draft) by flow ID
        """
        try:
            result = await self._collection('flows').find_one({"flow_id": flow_id})
            if result is None:
                return None
            return FlowData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("get_flow", e)

    async def get_flows(self, account_id: str) -> List[FlowData]:
        """
        Get all flows of an account, oldest first
        """
        try:
            cursor = self._collection('flows').find({"account_id": account_id}).sort("created_at", ASCENDING)
            flows: List[FlowData] = []
            async for flow_dict in cursor:
                flows.append(FlowData.model_validate(self._from_document(flow_dict)))
            return flows
        except Exception as e:
            self._handle_db_operation("get_flows", e)

    async def update_flow(self, flow: FlowData) -> Optional[FlowData]:
        """
        Replace the stored header and draft of a flow
        """
        try:
            flow_dict = self._to_document(flow)
            flow_dict["updated_at"] = datetime.utcnow()
            result = await self._collection('flows').find_one_and_update(
                {"flow_id": flow.flow_id},
                {"$set": flow_dict},
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return FlowData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("update_flow", e)

    # Flow version operations
    async def save_flow_version(self, flow_version: FlowVersionData) -> FlowVersionData:
        try:
            version_dict = self._to_document(flow_version)
            result = await self._collection('flow_versions').insert_one(version_dict)
            version_dict["_id"] = result.inserted_id
            return FlowVersionData.model_validate(self._from_document(version_dict))
        except Exception as e:
            self._handle_db_operation("save_flow_version", e)

    async def get_flow_version(self, flow_id: str, version: int) -> Optional[FlowVersionData]:
        try:
            result = await self._collection('flow_versions').find_one({"flow_id": flow_id, "version": version})
            if result is None:
                return None
            return FlowVersionData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("get_flow_version", e)

    async def update_flow_version_status(self, flow_id: str, version: int, status: FlowStatus) -> bool:
        """
        Only the status of a published snapshot may change; the graph never does.
        """
        try:
            result = await self._collection('flow_versions').update_one(
                {"flow_id": flow_id, "version": version},
                {"$set": {"status": status.value}}
            )
            return result.modified_count > 0
        except Exception as e:
            self._handle_db_operation("update_flow_version_status", e)

    async def get_latest_flow_version_number(self, flow_id: str) -> Optional[int]:
        """
        Highest version ever written for the flow, whether or not it became current
        """
        try:
            result = await self._collection('flow_versions').find_one(
                {"flow_id": flow_id},
                projection={"version": 1},
                sort=[("version", DESCENDING)]
            )
            if result is None:
                return None
            return result["version"]
        except Exception as e:
            self._handle_db_operation("get_latest_flow_version_number", e)

    async def delete_flow_version(self, flow_id: str, version: int) -> bool:
        try:
            result = await self._collection('flow_versions').delete_one({"flow_id": flow_id, "version": version})
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("delete_flow_version", e)

    # Field mapping operations (insert-only)
    async def save_field_mappings(self, field_mappings: List[FieldMappingData]) -> bool:
        if not field_mappings:
            return True
        try:
            await self._collection('field_mappings').insert_many(
                [self._to_document(mapping) for mapping in field_mappings]
            )
            return True
        except Exception as e:
            self._handle_db_operation("save_field_mappings", e)

    async def get_field_mappings(self, flow_id: str, version: int) -> List[FieldMappingData]:
        try:
            cursor = self._collection('field_mappings').find({"flow_id": flow_id, "version": version})
            mappings: List[FieldMappingData] = []
            async for doc in cursor:
                mappings.append(FieldMappingData.model_validate(self._from_document(doc)))
            return mappings
        except Exception as e:
            self._handle_db_operation("get_field_mappings", e)

    async def delete_field_mappings(self, flow_id: str, version: int) -> int:
        try:
            result = await self._collection('field_mappings').delete_many({"flow_id": flow_id, "version": version})
            return result.deleted_count
        except Exception as e:
            self._handle_db_operation("delete_field_mappings", e)

    # Session operations
    async def create_session(self, session: SessionData) -> Optional[SessionData]:
        """
        Insert a new session. Returns None when the conversation already has an
        active session (partial unique index).
        """
        try:
            session_dict = self._to_document(session)
            result = await self._collection('sessions').insert_one(session_dict)
            session_dict["_id"] = result.inserted_id
            return SessionData.model_validate(self._from_document(session_dict))
        except DuplicateKeyError:
            self.log_util.warning(
                service_name="FlowDB",
                message=f"Active session already exists for conversation {session.conversation_id}"
            )
            return None
        except Exception as e:
            self._handle_db_operation("create_session", e)

    async def get_session(self, session_id: str) -> Optional[SessionData]:
        try:
            result = await self._collection('sessions').find_one({"session_id": session_id})
            if result is None:
                return None
            return SessionData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("get_session", e)

    async def get_active_session(self, conversation_id: str) -> Optional[SessionData]:
        try:
            result = await self._collection('sessions').find_one({
                "conversation_id": conversation_id,
                "status": SessionStatus.ACTIVE.value
            })
            if result is None:
                return None
            return SessionData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("get_active_session", e)

    async def get_sessions_by_conversation(self, conversation_id: str) -> List[SessionData]:
        try:
            cursor = self._collection('sessions').find({"conversation_id": conversation_id}).sort("started_at", ASCENDING)
            sessions: List[SessionData] = []
            async for doc in cursor:
                sessions.append(SessionData.model_validate(self._from_document(doc)))
            return sessions
        except Exception as e:
            self._handle_db_operation("get_sessions_by_conversation", e)

    async def update_session(self, session: SessionData) -> Optional[SessionData]:
        try:
            session_dict = self._to_document(session)
            result = await self._collection('sessions').find_one_and_update(
                {"session_id": session.session_id},
                {"$set": session_dict},
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return SessionData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("update_session", e)

    async def get_session_counts_by_status(self, flow_id: str) -> Dict[str, int]:
        try:
            pipeline = [
                {"$match": {"flow_id": flow_id}},
                {"$group": {"_id": "$status", "count": {"$sum": 1}}}
            ]
            counts: Dict[str, int] = {}
            async for doc in self._collection('sessions').aggregate(pipeline):
                counts[doc["_id"]] = doc["count"]
            return counts
        except Exception as e:
            self._handle_db_operation("get_session_counts_by_status", e)

    # Continuation operations
    async def save_continuation(self, continuation: ContinuationData) -> ContinuationData:
        try:
            continuation_dict = self._to_document(continuation)
            result = await self._collection('continuations').insert_one(continuation_dict)
            continuation_dict["_id"] = result.inserted_id
            return ContinuationData.model_validate(self._from_document(continuation_dict))
        except Exception as e:
            self._handle_db_operation("save_continuation", e)

    async def get_due_continuations(self, now: datetime, limit: int = 100) -> List[ContinuationData]:
        """
        Pending continuations whose deadline has passed, oldest deadline first
        """
        try:
            cursor = self._collection('continuations').find({
                "status": ContinuationStatus.PENDING.value,
                "deadline": {"$ne": None, "$lte": now}
            }).sort("deadline", ASCENDING).limit(limit)
            results: List[ContinuationData] = []
            async for doc in cursor:
                results.append(ContinuationData.model_validate(self._from_document(doc)))
            return results
        except Exception as e:
            self._handle_db_operation("get_due_continuations", e)

    async def mark_continuation_fired(self, continuation_id: str) -> bool:
        try:
            result = await self._collection('continuations').update_one(
                {"continuation_id": continuation_id, "status": ContinuationStatus.PENDING.value},
                {"$set": {"status": ContinuationStatus.FIRED.value, "updated_at": datetime.utcnow()}}
            )
            return result.modified_count > 0
        except Exception as e:
            self._handle_db_operation("mark_continuation_fired", e)

    async def reopen_continuation(self, continuation_id: str) -> bool:
        """
        Put a fired continuation back to pending and count the failed replay
        """
        try:
            result = await self._collection('continuations').update_one(
                {"continuation_id": continuation_id, "status": ContinuationStatus.FIRED.value},
                {
                    "$set": {"status": ContinuationStatus.PENDING.value, "updated_at": datetime.utcnow()},
                    "$inc": {"attempts": 1}
                }
            )
            return result.modified_count > 0
        except Exception as e:
            self._handle_db_operation("reopen_continuation", e)

    async def cancel_pending_continuations(self, session_id: str) -> int:
        try:
            result = await self._collection('continuations').update_many(
                {"session_id": session_id, "status": ContinuationStatus.PENDING.value},
                {"$set": {"status": ContinuationStatus.CANCELLED.value, "updated_at": datetime.utcnow()}}
            )
            return result.modified_count
        except Exception as e:
            self._handle_db_operation("cancel_pending_continuations", e)

    # Dedup ledger
    async def record_processed_event(self, processed_event: ProcessedEventData) -> bool:
        """
        Returns False when the provider message id was already recorded for the conversation
        """
        try:
            await self._collection('processed_events').insert_one(self._to_document(processed_event))
            return True
        except DuplicateKeyError:
            return False
        except Exception as e:
            self._handle_db_operation("record_processed_event", e)

    async def release_processed_event(self, conversation_id: str, provider_message_id: str) -> bool:
        try:
            result = await self._collection('processed_events').delete_one({
                "conversation_id": conversation_id,
                "provider_message_id": provider_message_id
            })
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("release_processed_event", e)

    # Webhook operations
    async def save_webhook_message(self, webhook_message: WebhookMessageData) -> WebhookMessageData:
        try:
            webhook_dict = self._to_document(webhook_message)
            result = await self._collection('webhook_messages').insert_one(webhook_dict)
            webhook_dict["_id"] = result.inserted_id
            return WebhookMessageData.model_validate(self._from_document(webhook_dict))
        except Exception as e:
            self._handle_db_operation("save_webhook_message", e)

    async def update_webhook_message(self, webhook_message: WebhookMessageData) -> Optional[WebhookMessageData]:
        from bson import ObjectId

        try:
            webhook_dict = self._to_document(webhook_message)
            webhook_dict["updated_at"] = datetime.utcnow()
            result = await self._collection('webhook_messages').find_one_and_update(
                {"_id": ObjectId(webhook_message.id)},
                {"$set": webhook_dict},
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return WebhookMessageData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("update_webhook_message", e)

    # Session transaction operations
    async def save_session_transaction(self, transaction: SessionTransactionData) -> SessionTransactionData:
        try:
            transaction_dict = self._to_document(transaction)
            result = await self._collection('session_transactions').insert_one(transaction_dict)
            transaction_dict["_id"] = result.inserted_id
            return SessionTransactionData.model_validate(self._from_document(transaction_dict))
        except Exception as e:
            self._handle_db_operation("save_session_transaction", e)

    async def get_transaction_counts_by_node(self, flow_id: str, version: Optional[int] = None) -> Dict[str, int]:
        """
        Get transaction counts grouped by node_id for a flow

        Returns:
            Dictionary mapping node_id to transaction count
        """
        try:
            match: Dict[str, Any] = {"flow_id": flow_id}
            if version is not None:
                match["flow_version"] = version
            pipeline = [
                {"$match": match},
                {"$group": {"_id": "$node_id", "count": {"$sum": 1}}}
            ]
            counts: Dict[str, int] = {}
            async for doc in self._collection('session_transactions').aggregate(pipeline):
                counts[doc["_id"]] = doc["count"]
            return counts
        except Exception as e:
            self._handle_db_operation("get_transaction_counts_by_node", e)
