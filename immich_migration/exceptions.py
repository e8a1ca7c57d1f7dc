"""
Custom exceptions for the Immich library migration tool.
"""
from typing import Optional


class MigrationError(Exception):
    """Base exception for migration errors."""
    pass


class ConfigurationError(MigrationError):
    """Error related to configuration."""
    pass


class CheckpointError(MigrationError):
    """Error reading or writing the progress checkpoint."""
    pass


class SourceParseError(MigrationError):
    """A row of the legacy export could not be parsed."""
    def __init__(self, table: str, line: str):
        super().__init__(f"Following {table} line failed to parse:\n{line}")
        self.table = table
        self.line = line


class TagHierarchyError(MigrationError):
    """The tag forest could not be ordered parent-before-child."""
    pass


class LivePhotoDependencyError(MigrationError):
    """The video half of a live photo has not been migrated."""
    def __init__(self, filename: str, video_id: str):
        super().__init__(f"Video for live photo does not exist for: {filename} ({video_id})")
        self.filename = filename
        self.video_id = video_id


class UnmappedMemberError(MigrationError):
    """A tag or album references an asset without a new id."""
    pass


class RemoteIdError(MigrationError):
    """The server returned an id that is missing or not well-formed."""
    pass


class AssignmentError(MigrationError):
    """A bulk tag/album assignment reported a non-duplicate error."""
    pass


class AssetUploadIncompleteError(MigrationError):
    """Raised after an asset pass in which some uploads failed."""
    pass


class ImmichApiError(MigrationError):
    """Non-success response from the Immich API."""
    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
