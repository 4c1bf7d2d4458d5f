from .event_types import LoginResponse, RawEvent, SyncBatch
from .http_client import MatrixHTTPClient

__all__ = ["MatrixHTTPClient", "RawEvent", "LoginResponse", "SyncBatch"]
