from __future__ import annotations

import dataclasses
import re
from typing import Optional

from dbgateway.models.query import QueryOptions

_LIMIT = re.compile(r"\blimit\b", re.IGNORECASE)
_AGGREGATE = re.compile(r"\b(?:count|sum|avg|max|min)\s*\(", re.IGNORECASE)


@dataclasses.dataclass(frozen=True)
class Page:
    limit: int
    offset: int


def resolve_page(options: Optional[QueryOptions], default_limit: int, max_limit: int) -> Optional[Page]:
    """Turns explicit pagination options into a clamped limit/offset pair.

    Returns None when the caller asked for no pagination at all.
    """
    if options is None or not options.has_pagination():
        return None
    page_size = options.page_size or default_limit
    limit = min(options.limit or page_size, max_limit)
    if options.offset is not None:
        offset = options.offset
    else:
        offset = max(0, ((options.page or 1) - 1) * page_size)
    return Page(limit=limit, offset=offset)


def needs_default_limit(query: str) -> bool:
    """A plain SELECT with no LIMIT and no aggregate function."""
    text = query.strip()
    return (
        text.lower().startswith("select")
        and not _LIMIT.search(text)
        and not _AGGREGATE.search(text)
    )


def _strip_terminator(query: str) -> str:
    return query.strip().rstrip(";").rstrip()


def apply_sql_page(query: str, page: Page) -> str:
    return f"{_strip_terminator(query)} LIMIT {page.limit} OFFSET {page.offset}"


def apply_default_limit(query: str, default_limit: int, max_limit: int) -> str:
    if not needs_default_limit(query):
        return query
    return f"{_strip_terminator(query)} LIMIT {min(default_limit, max_limit)}"
