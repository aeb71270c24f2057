"""
Reply Validation Service
Checks waitForReply answers against the node's replyType constraint.
"""
import re
from typing import Optional, Dict, Any

from utils.log_utils import LogUtil
from models.flow_data import ReplyType
from models.inbound_event import EventKind

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


def is_numeric_string(value: str) -> bool:
    """Check if string represents a valid number (integer or float)"""
    if not value or not value.strip():
        return False
    try:
        float(value.strip())
        return True
    except (ValueError, TypeError):
        return False


class ReplyValidationService:
    """
    Service for validating user replies against the expected reply type.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def validate_reply(
        self,
        reply_type: Optional[ReplyType],
        event_kind: EventKind,
        reply_value: Any
    ) -> Dict[str, Any]:
        """
        Returns:
            {"valid": bool, "error": Optional[str]}
        """
        if reply_type is None:
            return {"valid": True, "error": None}

        if event_kind == EventKind.FORM_REPLY or not isinstance(reply_value, str):
            # A typed wait expects a single answer, not a form submission
            return self._invalid(reply_type, reply_value, "Expected a single reply")

        reply = reply_value.strip()
        if reply_type == ReplyType.TEXT:
            if not reply:
                return self._invalid(reply_type, reply_value, "Reply must not be empty")
        elif reply_type == ReplyType.NUMBER:
            if not is_numeric_string(reply):
                return self._invalid(reply_type, reply_value, "Input must be a number")
        elif reply_type == ReplyType.EMAIL:
            if not EMAIL_PATTERN.match(reply):
                return self._invalid(reply_type, reply_value, "Invalid email format")

        return {"valid": True, "error": None}

    def _invalid(self, reply_type: ReplyType, reply_value: Any, error: str) -> Dict[str, Any]:
        self.log_util.info(
            service_name="ReplyValidationService",
            message=f"[VALIDATE_REPLY] Reply '{reply_value}' failed {reply_type.value} validation: {error}"
        )
        return {"valid": False, "error": error}
