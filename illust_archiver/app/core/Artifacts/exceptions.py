# Artifacts/exceptions.py

class ArtifactError(Exception):
    """Base exception for attachment storage."""
    def __init__(self, message, key=None, *args):
        super().__init__(message, *args)
        self.key = key

    def __str__(self):
        base = super().__str__()
        return f"{base} (Artifact: {self.key})" if self.key is not None else base


class DownloadError(ArtifactError):
    """The attachment bytes could not be fetched or written."""
    pass


class PathCollisionError(ArtifactError):
    """No free on-disk location could be found for an attachment."""
    pass
