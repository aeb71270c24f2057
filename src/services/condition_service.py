import re
from typing import Any, Optional

from utils.log_utils import LogUtil
from models.flow_data import ConditionNode, ConditionOperator, ConditionSubject
from models.session_data import SessionData


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (dict, list, tuple, set)):
        return len(value) == 0
    return False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (ValueError, TypeError):
        return None


def evaluate(operator: ConditionOperator, subject: Any, compare_value: Optional[str]) -> bool:
    """
    Evaluate one condition. String comparisons are case-sensitive; numeric
    operators are false when either side is not a number.
    """
    if operator == ConditionOperator.IS_EMPTY:
        return is_empty(subject)
    if operator == ConditionOperator.IS_NOT_EMPTY:
        return not is_empty(subject)

    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left = _as_number(subject)
        right = _as_number(compare_value)
        if left is None or right is None:
            return False
        return left > right if operator == ConditionOperator.GREATER_THAN else left < right

    if subject is None:
        # Nothing to compare against; only not_equals holds
        return operator == ConditionOperator.NOT_EQUALS

    text = subject if isinstance(subject, str) else str(subject)
    compare = compare_value or ""
    if operator == ConditionOperator.EQUALS:
        return text == compare
    if operator == ConditionOperator.NOT_EQUALS:
        return text != compare
    if operator == ConditionOperator.CONTAINS:
        return compare in text
    if operator == ConditionOperator.STARTS_WITH:
        return text.startswith(compare)
    if operator == ConditionOperator.REGEX:
        return re.search(compare, text) is not None
    raise ValueError(f"Unsupported operator {operator}")


class ConditionService:
    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def resolve_subject(self, node: ConditionNode, session: SessionData) -> Any:
        if node.subject == ConditionSubject.FORM_FIELD:
            return session.form_values.get(node.subjectKey)
        if node.subject == ConditionSubject.VARIABLE:
            return session.variables.get(node.subjectKey)
        return session.last_reply

    def evaluate_node(self, node: ConditionNode, session: SessionData) -> bool:
        subject = self.resolve_subject(node, session)
        result = evaluate(node.operator, subject, node.compareValue)
        self.log_util.info(
            service_name="ConditionService",
            message=f"Condition {node.id}: {node.operator.value}({subject!r}, {node.compareValue!r}) -> {result}"
        )
        return result
