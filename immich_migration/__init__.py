"""
Immich Library Migration Tool

Resumable, exactly-once migration of one user's legacy media library
(assets, tag hierarchy, stacks and albums) into Immich through its HTTP API.
"""
__version__ = "1.0.0"

# Import main classes for easy access
from immich_migration.config import MigrationConfig
from immich_migration.exceptions import (
    MigrationError,
    ConfigurationError,
    CheckpointError,
    SourceParseError,
    TagHierarchyError,
    LivePhotoDependencyError,
    UnmappedMemberError,
    RemoteIdError,
    AssignmentError,
    AssetUploadIncompleteError,
    ImmichApiError,
)
from immich_migration.orchestrator import MigrationOrchestrator

__all__ = [
    '__version__',
    'MigrationConfig',
    'MigrationOrchestrator',
    'MigrationError',
    'ConfigurationError',
    'CheckpointError',
    'SourceParseError',
    'TagHierarchyError',
    'LivePhotoDependencyError',
    'UnmappedMemberError',
    'RemoteIdError',
    'AssignmentError',
    'AssetUploadIncompleteError',
    'ImmichApiError',
]
