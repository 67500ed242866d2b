# fetch_types.py
# Description: Error taxonomy shared by every remote fetcher.
#
# Imports
from enum import Enum
from typing import Optional, Any
#
########################################################################################################################
#
# Functions:


class FetchErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_NETWORK = "transient_network"
    MALFORMED = "malformed"

    @property
    def degrades_entity(self) -> bool:
        """Only these kinds say something about the entity itself (revoked or removed)."""
        return self in (FetchErrorKind.UNAUTHORIZED, FetchErrorKind.NOT_FOUND)

    @property
    def retryable(self) -> bool:
        return self in (FetchErrorKind.RATE_LIMITED, FetchErrorKind.TRANSIENT_NETWORK)


class FetchError(Exception):
    """A remote call failed; `kind` says how the caller may react."""

    def __init__(self, message: str, kind: FetchErrorKind, entity_id: Any = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = FetchErrorKind(kind)
        self.entity_id = entity_id
        self.status_code = status_code

    def __str__(self):
        base = super().__str__()
        details = [f"Kind: {self.kind.value}"]
        if self.entity_id is not None:
            details.append(f"EntityID: {self.entity_id}")
        if self.status_code is not None:
            details.append(f"HTTP {self.status_code}")
        return f"{base} ({', '.join(details)})"


def classify_status(status_code: int) -> Optional[FetchErrorKind]:
    """Map an HTTP status to an error kind; None for success."""
    if status_code < 400:
        return None
    if status_code in (401, 403):
        return FetchErrorKind.UNAUTHORIZED
    if status_code in (404, 410):
        return FetchErrorKind.NOT_FOUND
    if status_code == 429:
        return FetchErrorKind.RATE_LIMITED
    if status_code >= 500 or status_code == 408:
        return FetchErrorKind.TRANSIENT_NETWORK
    return FetchErrorKind.MALFORMED

#
# End of fetch_types.py
########################################################################################################################
