"""REST collaborator client (identity, rooms, history, voice uploads)."""
from .client import ApiClient, ApiError
from .schemas import HistoryMessage, HistoryResponse, RoomInfo

__all__ = ["ApiClient", "ApiError", "HistoryMessage", "HistoryResponse", "RoomInfo"]
