from .base import EngineClient
from .factory import create_client
from .mongodb import MongoDBClient
from .mysql import MySQLClient
from .postgres import PostgreSQLClient
from .sqlite import SQLiteClient

__all__ = [
    "EngineClient",
    "create_client",
    "MongoDBClient",
    "MySQLClient",
    "PostgreSQLClient",
    "SQLiteClient",
]
