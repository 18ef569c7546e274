from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class ColumnMetadata(BaseModel):
    """Column description attached to a query result.

    Attributes:
        name: Column or field name.
        type: Native or inferred type name.
        nullable: Whether the column admits NULL.
        primary_key: Whether the column is part of the primary key.
        auto_increment: MySQL auto-increment flag.
        unsigned: MySQL unsigned flag.
        zerofill: MySQL zerofill flag.
        length: Declared display length, when the driver reports one.
        charset: Character set, when the driver reports one.
    """
    name: str
    type: str
    nullable: bool = True
    primary_key: bool = False
    auto_increment: Optional[bool] = None
    unsigned: Optional[bool] = None
    zerofill: Optional[bool] = None
    length: Optional[int] = None
    charset: Optional[str] = None


class QueryRequest(BaseModel):
    connection_id: str
    query: str
    parameters: Optional[List[Any]] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    timeout: Optional[int] = None


class QueryResult(BaseModel):
    """Uniform result shape for every engine.

    Execution failures are reported through ``error`` rather than raised.
    """
    data: List[Dict[str, Any]] = Field(default_factory=list)
    total_rows: int = 0
    execution_time: float = 0.0
    columns: List[ColumnMetadata] = Field(default_factory=list)
    affected_rows: Optional[int] = None
    error: Optional[str] = None
    warnings: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, message: str, execution_time: float = 0.0, **metadata) -> "QueryResult":
        return cls(
            error=message,
            execution_time=execution_time,
            metadata=metadata or None,
        )


class ValidationError(BaseModel):
    line: int = 1
    column: int = 1
    message: str
    severity: str = "error"


class ValidationWarning(BaseModel):
    line: int = 1
    column: int = 1
    message: str
    suggestion: Optional[str] = None


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[ValidationError] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)


class QueryOptions(BaseModel):
    """Per-call options for the query service.

    Attributes:
        page: One-based page number.
        page_size: Rows per page.
        offset: Explicit row offset. Wins over page arithmetic.
        limit: Explicit row limit. Wins over page_size.
        timeout: Deadline in milliseconds.
        dry_run: Validate and paginate without touching the engine.
        enable_metrics: Set False to skip metric recording for this call.
        tags: Free-form labels stored on the history entry.
    """
    page: Optional[int] = None
    page_size: Optional[int] = None
    offset: Optional[int] = None
    limit: Optional[int] = None
    timeout: Optional[int] = None
    dry_run: bool = False
    enable_metrics: bool = True
    tags: List[str] = Field(default_factory=list)

    def has_pagination(self) -> bool:
        return any(v is not None for v in (self.page, self.page_size, self.offset, self.limit))


class QueryPerformanceMetric(BaseModel):
    query_id: str
    connection_id: str
    query: str
    execution_time: float
    rows_returned: int
    timestamp: datetime
    error: Optional[str] = None


class QueryHistoryEntry(BaseModel):
    id: str
    connection_id: str
    query: str
    parameters: Optional[List[Any]] = None
    result: QueryResult
    metrics: QueryPerformanceMetric
    timestamp: datetime
    favorite: bool = False
    tags: List[str] = Field(default_factory=list)
