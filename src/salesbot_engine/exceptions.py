"""
Exception hierarchy for the sales-bot flow engine
"""
from typing import Any, Dict, List, Optional


class SalesBotEngineError(Exception):
    """Base exception for the flow engine"""
    pass


class FlowNotFoundError(SalesBotEngineError):
    """Raised when a flow (or a pinned version of it) cannot be loaded"""
    def __init__(self, flow_id: str, version: Optional[int] = None):
        self.flow_id = flow_id
        self.version = version
        msg = f"Flow '{flow_id}' not found"
        if version is not None:
            msg = f"Flow '{flow_id}' version {version} not found"
        super().__init__(msg)


class FlowParseError(SalesBotEngineError):
    """Raised when a flow definition cannot be read"""
    pass


class FlowValidationError(SalesBotEngineError):
    """Raised at publish time when the graph breaks a structural rule"""
    def __init__(self, issues: List[Dict[str, Any]]):
        self.issues = issues
        kinds = ", ".join(sorted({issue["kind"] for issue in issues}))
        super().__init__(f"Flow validation failed: {kinds}")


class ConfigurationError(SalesBotEngineError):
    """Malformed node data, e.g. a bad time range"""
    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        if node_id:
            message = f"Node '{node_id}': {message}"
        super().__init__(message)


class EvaluationError(SalesBotEngineError):
    """A predicate could not be evaluated; always degraded to ``False``"""
    pass


class AssignmentError(SalesBotEngineError):
    """Base class for responsible-resolution failures"""
    pass


class NoEligibleAssigneeError(AssignmentError):
    """Round-robin found no seller or manager to rotate through"""
    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        super().__init__(f"No eligible assignee in workspace '{workspace_id}'")


class UnassignedTargetError(AssignmentError):
    """Specific assignment without a valid current member"""
    def __init__(self, user_id: Optional[str], workspace_id: str):
        self.user_id = user_id
        self.workspace_id = workspace_id
        if user_id:
            msg = f"User '{user_id}' is not a member of workspace '{workspace_id}'"
        else:
            msg = "No user configured for specific assignment"
        super().__init__(msg)


class LoopLimitExceeded(SalesBotEngineError):
    """Too many goto jumps inside a single execution"""
    def __init__(self, node_id: str, limit: int, trail: List[str] = None):
        self.node_id = node_id
        self.limit = limit
        self.trail = list(trail or [])
        super().__init__(
            f"Loop limit of {limit} jumps exceeded at goto node '{node_id}'"
        )


class StateTransitionError(SalesBotEngineError):
    """Invalid execution status change"""
    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class InfrastructureError(SalesBotEngineError):
    """Retryable failure of a collaborator; the execution is left untouched"""
    pass


class PersistenceUnavailableError(InfrastructureError):
    """The execution or flow store could not be reached"""
    pass


class MessagingUnavailableError(InfrastructureError):
    """The messaging collaborator could not deliver the side effect"""
    pass


class LeaseUnavailableError(SalesBotEngineError):
    """Another worker currently holds the execution"""
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' is leased by another worker")


class ExecutionNotFoundError(SalesBotEngineError):
    """No execution with the given id"""
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found")


class RetryExhaustedError(InfrastructureError):
    """Dispatch retries ran out for an event"""
    def __init__(self, execution_id: str, retry_count: int, last_error: Exception = None):
        self.execution_id = execution_id
        self.retry_count = retry_count
        self.last_error = last_error
        super().__init__(
            f"Dispatch for execution '{execution_id}' failed after {retry_count} retries"
        )
