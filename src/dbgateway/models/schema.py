from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from dbgateway.models.config import EngineKind


class ColumnSchema(BaseModel):
    name: str
    type: str
    nullable: bool = True
    primary_key: bool = False
    auto_increment: Optional[bool] = None
    default_value: Optional[str] = None
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    charset: Optional[str] = None
    collation: Optional[str] = None
    comment: Optional[str] = None


class IndexSchema(BaseModel):
    name: str
    columns: List[str]
    unique: bool = False
    primary: bool = False
    type: Optional[str] = None


class ForeignKeySchema(BaseModel):
    name: str
    column: str
    referenced_table: str
    referenced_column: str
    on_delete: Optional[str] = None
    on_update: Optional[str] = None


class TableSchema(BaseModel):
    name: str
    type: Literal["table", "view", "collection"] = "table"
    columns: List[ColumnSchema] = Field(default_factory=list)
    indexes: Optional[List[IndexSchema]] = None
    foreign_keys: Optional[List[ForeignKeySchema]] = None
    row_count: Optional[int] = None
    comment: Optional[str] = None


class DatabaseSchema(BaseModel):
    name: str
    engine: EngineKind
    tables: List[TableSchema] = Field(default_factory=list)

    def table_names(self) -> List[str]:
        return [t.name for t in self.tables]

    def find_table(self, name: str) -> Optional[TableSchema]:
        """Exact match first, then case-insensitive."""
        exact = next((t for t in self.tables if t.name == name), None)
        if exact is not None:
            return exact
        lowered = name.lower()
        return next((t for t in self.tables if t.name.lower() == lowered), None)


@dataclass
class SchemaCacheEntry:
    """A captured schema plus the moment it was captured (epoch ms)."""
    schema: DatabaseSchema
    ttl_ms: int
    captured_at: float = field(default_factory=lambda: time.time() * 1000)

    def is_expired(self, now_ms: Optional[float] = None) -> bool:
        now_ms = time.time() * 1000 if now_ms is None else now_ms
        return now_ms - self.captured_at > self.ttl_ms
