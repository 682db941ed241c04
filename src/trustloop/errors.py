"""Exception hierarchy for trustloop.

Everything derives from TrustLoopError so callers can catch broadly or
narrowly as needed.
"""


class TrustLoopError(Exception):
    """Base exception for all trustloop errors."""


class StoreError(TrustLoopError):
    """Failed repository operation."""


class RecordNotFoundError(StoreError):
    """Referenced record does not exist in the store."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} {record_id} does not exist")
        self.kind = kind
        self.record_id = record_id
