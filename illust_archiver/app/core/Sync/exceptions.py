# Sync/exceptions.py

class SyncError(Exception):
    """Base exception for metadata synchronization."""
    pass


class ReconcileError(SyncError):
    """Represents an error folding a fetched snapshot into the store."""
    def __init__(self, message, entity_id=None, kind=None, *args):
        super().__init__(message, *args)
        self.entity_id = entity_id
        self.kind = kind

    def __str__(self):
        base = super().__str__()
        details = []
        if self.kind: details.append(f"Kind: {self.kind}")
        if self.entity_id is not None: details.append(f"EntityID: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base
