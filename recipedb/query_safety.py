"""Denylist/allowlist filter for the admin query endpoint.

This is a pattern heuristic, not a SQL parser. A statement is rejected when
any denylist pattern matches anywhere in it, and accepted only when it starts
with one of the allowlisted prefixes. Matching is case-insensitive and spans
newlines.
"""

import re
from typing import List, Optional

from .exceptions import UnsafeQueryError

_FLAGS = re.IGNORECASE | re.DOTALL

DANGEROUS_PATTERNS: List[re.Pattern] = [
    re.compile(r"\bdrop\s+table\b", _FLAGS),
    re.compile(r"\bdrop\s+database\b", _FLAGS),
    re.compile(r"\btruncate\b", _FLAGS),
    re.compile(r"\balter\s+table\b.*\bdrop\b", _FLAGS),
    re.compile(r"\bdelete\s+from\b(?!.*\bwhere\b)", _FLAGS),
    re.compile(r"\bupdate\b\s+.*\bset\b(?!.*\bwhere\b)", _FLAGS),
    # Stacked statements smuggled after a terminator
    re.compile(r";\s*(drop|delete|update|insert|create|alter|truncate|grant|revoke)\b", _FLAGS),
    re.compile(r"\bxp_cmdshell\b", _FLAGS),
]

ALLOWED_PREFIXES: List[re.Pattern] = [
    re.compile(r"^\s*select\b", _FLAGS),
    re.compile(r"^\s*insert\b", _FLAGS),
    re.compile(r"^\s*update\b.*\bwhere\b", _FLAGS),
    re.compile(r"^\s*with\b", _FLAGS),
    re.compile(r"^\s*explain\b", _FLAGS),
]


def rejection_reason(query: str) -> Optional[str]:
    """Return why ``query`` is rejected, or None when it is allowed."""
    if not query or not query.strip():
        return "Query is empty"
    for pattern in DANGEROUS_PATTERNS:
        if pattern.search(query):
            return f"Query matches a destructive pattern: {pattern.pattern}"
    if not any(prefix.search(query) for prefix in ALLOWED_PREFIXES):
        return "Query does not start with an allowed statement"
    return None


def is_query_safe(query: str) -> bool:
    return rejection_reason(query) is None


def check_query(query: str) -> str:
    """Return ``query`` unchanged or raise UnsafeQueryError."""
    reason = rejection_reason(query)
    if reason is not None:
        raise UnsafeQueryError(f"Unsafe query detected: {reason}", query=query)
    return query
