import pytest

from models.flow_data import ReplyType
from models.inbound_event import EventKind
from services.reply_validation_service import ReplyValidationService, is_numeric_string


@pytest.fixture
def service(log_util):
    return ReplyValidationService(log_util=log_util)


def test_untyped_wait_accepts_anything(service):
    assert service.validate_reply(None, EventKind.FORM_REPLY, {"Name": "Ada"})["valid"] is True
    assert service.validate_reply(None, EventKind.TEXT, "")["valid"] is True


@pytest.mark.parametrize("reply_type, value, valid", [
    (ReplyType.NUMBER, "42", True),
    (ReplyType.NUMBER, " 3.14 ", True),
    (ReplyType.NUMBER, "forty", False),
    (ReplyType.EMAIL, "ada@example.com", True),
    (ReplyType.EMAIL, "ada@example", False),
    (ReplyType.TEXT, "hello", True),
    (ReplyType.TEXT, "   ", False),
])
def test_typed_replies(service, reply_type, value, valid):
    result = service.validate_reply(reply_type, EventKind.TEXT, value)
    assert result["valid"] is valid
    assert (result["error"] is None) is valid


def test_form_reply_to_typed_wait_is_invalid(service):
    result = service.validate_reply(ReplyType.TEXT, EventKind.FORM_REPLY, {"Name": "Ada"})
    assert result == {"valid": False, "error": "Expected a single reply"}


def test_is_numeric_string():
    assert is_numeric_string("-7")
    assert not is_numeric_string("")
    assert not is_numeric_string("1,000")
