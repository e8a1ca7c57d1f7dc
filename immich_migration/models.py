"""
Data structures for rows read from the legacy export.
"""
from dataclasses import dataclass, field
from typing import Optional, Set

from immich_migration.utils.state_manager import NONE_SENTINEL

# Null marker used by the export for SQL NULL
NULL_MARKER = "\\N"

IMAGE = "IMAGE"
VIDEO = "VIDEO"
TRASHED = "trashed"


def nullable(value: Optional[str]) -> Optional[str]:
    """Map empty strings and the export null marker to None."""
    if value is None or value == "" or value == NULL_MARKER:
        return None
    return value


def nullable_id(value: Optional[str]) -> Optional[str]:
    """Like ``nullable``, but a reference column may also hold ``"NONE"``."""
    value = nullable(value)
    if value == NONE_SENTINEL:
        return None
    return value


@dataclass
class LegacyAsset:
    """One row of the assets table, already filtered to the migrated user."""
    id: str
    device_asset_id: str
    owner_id: str
    device_id: str
    type: str
    file_path: str
    file_created_at: str
    file_modified_at: str
    live_photo_video_id: Optional[str]
    filename: str
    sidecar_path: Optional[str]
    status: str
    stack_id: Optional[str] = None
    duplicate_id: Optional[str] = None
    update_id: Optional[str] = None

    @property
    def is_trashed(self) -> bool:
        return self.status == TRASHED


@dataclass
class LegacyAlbum:
    id: str
    name: str
    description: Optional[str] = None
    assets: Set[str] = field(default_factory=set)


@dataclass
class LegacyStack:
    id: str
    primary_asset_id: str
