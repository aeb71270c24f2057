from typing import List, Optional


class FlowException(Exception):
    """
    This is the base exception for all flow exceptions
    """
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message, self.status_code)

class FlowDBException(FlowException):
    """
    This is the exception for all flow database exceptions
    """
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message=self.message, status_code=self.status_code)

class FlowServiceException(FlowException):
    """
    This is the exception for all flow service exceptions
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 500
        super().__init__(message=self.message, status_code=self.status_code)

class FlowNotFoundException(FlowException):
    """
    This is the exception when flow is not found
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 404
        super().__init__(message=self.message, status_code=self.status_code)

class FlowValidationException(FlowException):
    """
    Raised when a draft graph cannot be published. Carries every violation found,
    not only the first one.
    """
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.message = message
        self.errors = errors or []
        self.status_code = 400
        super().__init__(message=self.message, status_code=self.status_code)

class FlowTransitionException(FlowException):
    """
    Runtime reference to a missing node or edge. The session ends with status error.
    """
    def __init__(self, message: str, node_id: Optional[str] = None):
        self.message = message
        self.node_id = node_id
        self.status_code = 500
        super().__init__(message=self.message, status_code=self.status_code)

class DispatchException(FlowException):
    """
    Outbound send failed. The node does not advance.
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 502
        super().__init__(message=self.message, status_code=self.status_code)

class WaitTimeoutException(FlowException):
    """
    A wait expired and the node has no timeout edge to follow.
    """
    def __init__(self, message: str, node_id: Optional[str] = None):
        self.message = message
        self.node_id = node_id
        self.status_code = 408
        super().__init__(message=self.message, status_code=self.status_code)

class DuplicateEventException(FlowException):
    """
    Provider message id already processed for the conversation
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 200
        super().__init__(message=self.message, status_code=self.status_code)

class SessionTokenMismatchException(FlowException):
    """
    Response token does not belong to the conversation's active session
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 409
        super().__init__(message=self.message, status_code=self.status_code)

class SessionConflictException(FlowException):
    """
    The conversation already has an active session
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 409
        super().__init__(message=self.message, status_code=self.status_code)
