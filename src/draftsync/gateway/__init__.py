# /src/draftsync/gateway/__init__.py
# Persistence gateway implementations

from .base import PersistenceGateway, AssistantProxy, SaveResult, AssistantReply
from .memory_gateway import MemoryGateway, ScriptedAssistant
from .json_gateway import JSONGateway
from .sqlite_gateway import SQLiteGateway
from .mongodb_gateway import MongoDBGateway
from .http_gateway import HTTPGateway

__all__ = [
    "PersistenceGateway",
    "AssistantProxy",
    "SaveResult",
    "AssistantReply",
    "MemoryGateway",
    "ScriptedAssistant",
    "JSONGateway",
    "SQLiteGateway",
    "MongoDBGateway",
    "HTTPGateway",
]
