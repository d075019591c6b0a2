"""
Error taxonomy for the discovery engine.

    TransportError        - connectivity / network failure
    RemoteError           - the service answered with a failure status
    ParseError            - the response body could not be decoded
    SchemaNotFoundError   - a schema needed to proceed could not be resolved
    InvalidEntityNameError - empty entity name passed where one is required

The executor turns all of these into failed QueryResult values; only the
API layer and direct callers of the converter ever see them raised.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from odata_grid.core.schemas import FailedResponse


class EngineError(Exception):
    """Base class for every error raised by the engine."""


class TransportError(EngineError):
    pass


class RemoteError(EngineError):
    def __init__(self, failure: "FailedResponse", message: Optional[str] = None):
        self.failure = failure
        super().__init__(
            message or f"Service error: {failure.status_code} {failure.reason}"
        )


class ParseError(EngineError):
    pass


class SchemaNotFoundError(EngineError):
    def __init__(self, entity_logical_name: str):
        self.entity_logical_name = entity_logical_name
        super().__init__(f"Schema not found for entity '{entity_logical_name}'")


class InvalidEntityNameError(EngineError, ValueError):
    pass
