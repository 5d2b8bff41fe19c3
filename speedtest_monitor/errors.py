"""
Domain errors raised by the monitor service and mapped to HTTP statuses by the server.
"""


class MonitorError(Exception):
    """Base class for errors the API reports to callers."""


class NodeNotFoundError(MonitorError):
    """Raised when a request names a node id that does not exist."""

    def __init__(self, node_id: str):
        super().__init__(f"Node not found: {node_id}")
        self.node_id = node_id


class InvalidPayloadError(MonitorError):
    """Raised when an ingestion request body cannot be interpreted."""
