from dotenv import load_dotenv
import os

# Utils
from utils.log_utils import LogUtil

"""
Utility class for environment variables
"""
class EnvironmentUtils:
    def __init__(self, log_util: LogUtil):

        # Load environment variables
        load_dotenv()

        # Initialize logger
        self.log_util = log_util

        # Environment variables
        self.env_variables = {
            "APP_ENV": os.getenv("APP_ENV", "production"),
            "HOST": os.getenv("HOST", "0.0.0.0"),
            "PORT": int(os.getenv("PORT", "8018")),
            "ORG_ID": os.getenv("ORG_ID", "convoflow"),
            "LOKI_URL": os.getenv("LOKI_URL", ""),
            "MONGO_USERNAME": os.getenv("MONGO_USERNAME", ""),
            "MONGO_PASSWORD": os.getenv("MONGO_PASSWORD", ""),
            "MONGO_AUTH_SOURCE": os.getenv("MONGO_AUTH_SOURCE", "admin"),
            "MONGO_HOST": os.getenv("MONGO_HOST", "localhost"),
            "MONGO_PORT": int(os.getenv("MONGO_PORT", "27017")),
            "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "convoflow_db"),
            "DISPATCHER_URL": os.getenv("DISPATCHER_URL", "http://localhost:8017/channel/messages"),
            "DISPATCH_TIMEOUT_SECONDS": float(os.getenv("DISPATCH_TIMEOUT_SECONDS", "30")),
            "DISPATCH_MAX_ATTEMPTS": int(os.getenv("DISPATCH_MAX_ATTEMPTS", "3")),
            "CONVERSATION_SERVICE_URL": os.getenv("CONVERSATION_SERVICE_URL", ""),
            "ACCOUNT_SERVICE_URL": os.getenv("ACCOUNT_SERVICE_URL", ""),
            "SCHEDULER_INTERVAL_SECONDS": int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "20")),
            "ENGINE_MAX_STEPS_PER_EVENT": int(os.getenv("ENGINE_MAX_STEPS_PER_EVENT", "50")),
            "ENGINE_DISPATCH_RETRY_LIMIT": int(os.getenv("ENGINE_DISPATCH_RETRY_LIMIT", "3")),
            "ENGINE_DISPATCH_RETRY_DELAY_SECONDS": int(os.getenv("ENGINE_DISPATCH_RETRY_DELAY_SECONDS", "30")),
            "ENGINE_CONTINUATION_RETRY_LIMIT": int(os.getenv("ENGINE_CONTINUATION_RETRY_LIMIT", "3")),
            "DEBUG": os.getenv("DEBUG", "false"),
        }

    def get_env_variable(self, variable_name: str) -> str | int | float:
        if variable_name not in self.env_variables:
            self.log_util.error(service_name="EnvironmentUtils", message=f"Environment variable {variable_name} not found")
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]
