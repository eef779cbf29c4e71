"""
Error types raised by the accounting engine.
"""

from decimal import Decimal
from typing import Optional


class UnknownFeature(LookupError):
    """Raised when a feature slug does not exist in the catalog."""
    def __init__(self, slug: str):
        super().__init__(f"Unknown feature: {slug}")
        self.slug = slug


class QuotaExceededError(Exception):
    """Raised by ``enforce_or_fail`` when a request does not fit the quota."""
    def __init__(
        self,
        feature: str,
        limit: Optional[Decimal],
        used: Decimal,
        requested: Decimal
    ):
        super().__init__(
            f"Quota exceeded for feature {feature}. "
            f"Limit: {limit}, Used: {used}, Requested: {requested}"
        )
        self.feature = feature
        self.limit = limit
        self.used = used
        self.requested = requested

    @property
    def remaining(self) -> Optional[Decimal]:
        if self.limit is None:
            return None
        return max(Decimal("0"), self.limit - self.used)


class StorageFailure(Exception):
    """Raised when the underlying store fails to read or write.

    The engine never retries; the sqlite error is chained as the cause.
    """
