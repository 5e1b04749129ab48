"""Pipeline error taxonomy.

Repositories raise these; the HTTP layer catches, logs, and flattens them
into the generic `{"error": ...}` response.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline failures."""


class DealNotFoundError(PipelineError, LookupError):
    """Raised when a deal id does not resolve to a stored deal."""

    def __init__(self, deal_id: int) -> None:
        self.deal_id = deal_id
        super().__init__(f"Deal not found: id={deal_id}")


class MalformedDealIdError(PipelineError, ValueError):
    """Raised when a path segment cannot be parsed as an integer deal id."""

    def __init__(self, raw_id: str) -> None:
        self.raw_id = raw_id
        super().__init__(f"Invalid deal id: {raw_id!r}")


def parse_deal_id(raw_id: str) -> int:
    """Parse a path segment into a deal id.

    Only plain ASCII digits are accepted; signs, whitespace, and "1_000"
    style separators that int() would tolerate are rejected.

    Raises:
        MalformedDealIdError: If the segment is not a run of digits.
    """
    if not isinstance(raw_id, str) or not (raw_id.isascii() and raw_id.isdigit()):
        raise MalformedDealIdError(raw_id)
    return int(raw_id)
