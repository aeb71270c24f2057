import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.lock_utils import ConversationLockManager

# Database
from database.flow_db import FlowDB

# Internal Services (external lookups)
from services.internal.conversation_service import ConversationService
from services.internal.account_service import AccountService

# Services
from services.field_mapper_service import FieldMapperService
from services.flow_service import FlowService
from services.session_service import SessionService
from services.session_transaction_service import SessionTransactionService
from services.event_normalizer_service import EventNormalizerService
from services.condition_service import ConditionService
from services.reply_validation_service import ReplyValidationService
from services.message_dispatcher_service import MessageDispatcherService
from services.flow_interpreter_service import FlowInterpreterService
from services.trigger_service import TriggerService
from services.webhook_service import WebhookService
from services.continuation_scheduler_service import ContinuationSchedulerService

# APIs
from apis.flow_api import create_flow_api
from apis.webhook_message_api import create_webhook_message_api
from apis.session_api import create_session_api

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

# Database
flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)

# Internal Services
conversation_service = ConversationService(log_util=log_util, environment_utils=environment_utils)
account_service = AccountService(log_util=log_util, environment_utils=environment_utils)

# Services
field_mapper_service = FieldMapperService(log_util=log_util, flow_db=flow_db)

flow_service = FlowService(
    log_util=log_util,
    flow_db=flow_db,
    field_mapper_service=field_mapper_service
)

session_service = SessionService(log_util=log_util, flow_db=flow_db)

session_transaction_service = SessionTransactionService(log_util=log_util, flow_db=flow_db)

event_normalizer_service = EventNormalizerService(
    log_util=log_util,
    flow_db=flow_db,
    session_service=session_service,
    conversation_service=conversation_service
)

message_dispatcher_service = MessageDispatcherService(
    log_util=log_util,
    environment_utils=environment_utils,
    account_service=account_service
)

flow_interpreter_service = FlowInterpreterService(
    log_util=log_util,
    environment_utils=environment_utils,
    session_service=session_service,
    field_mapper_service=field_mapper_service,
    condition_service=ConditionService(log_util=log_util),
    reply_validation_service=ReplyValidationService(log_util=log_util),
    message_dispatcher_service=message_dispatcher_service,
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
    flow_interpreter_service=flow_interpreter_service,
    lock_manager=ConversationLockManager(),
    continuation_retry_limit=environment_utils.get_env_variable("ENGINE_CONTINUATION_RETRY_LIMIT")
)

# Replays expired waits, delays and dispatch retries
continuation_scheduler_service = ContinuationSchedulerService(
    log_util=log_util,
    flow_db=flow_db,
    webhook_service=webhook_service,
    check_interval_seconds=environment_utils.get_env_variable("SCHEDULER_INTERVAL_SECONDS")
)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await flow_db.ensure_indexes()
    await continuation_scheduler_service.start()
    log_util.info(service_name="ConvoFlowEngine", message="Application startup complete")

    yield

    # Shutdown
    await continuation_scheduler_service.stop()
    flow_db.close()
    log_util.info(service_name="ConvoFlowEngine", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="convoflow engine",
    description="Conversational flow execution engine driven by messaging webhooks",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Flow builder and operator APIs
app.include_router(create_flow_api(
    log_util=log_util,
    flow_service=flow_service,
    session_transaction_service=session_transaction_service
))

# Webhook API (receives provider deliveries)
app.include_router(create_webhook_message_api(
    log_util=log_util,
    webhook_service=webhook_service
))

# Session API
app.include_router(create_session_api(
    log_util=log_util,
    session_service=session_service,
    webhook_service=webhook_service
))

# Health check endpoint
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "convoflow_engine",
        "scheduler_running": continuation_scheduler_service.is_running
    }

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="ConvoFlowEngine", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": str(exc),
            "status_code": exc.status_code
        },
        headers={"Content-Type": "application/json"}
    )

# Global exception handler for any unhandled exceptions
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="ConvoFlowEngine", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "status_code": 500
        },
        headers={"Content-Type": "application/json"}
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
