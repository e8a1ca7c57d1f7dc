"""
Legacy id -> new id remapping over the checkpoint tables.

The checkpoint keeps the historical string encoding (``"NONE"`` for entities
that were deliberately not migrated). This module reads every entry as an
explicit state so callers never compare against the sentinel themselves.
"""
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from immich_migration.utils.state_manager import CheckpointRecord, NONE_SENTINEL

logger = logging.getLogger(__name__)


class MappingStatus(Enum):
    UNMIGRATED = "unmigrated"
    MAPPED = "mapped"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Mapping:
    """State of one legacy id in a remap table."""
    status: MappingStatus
    new_id: Optional[str] = None

    @property
    def is_mapped(self) -> bool:
        return self.status is MappingStatus.MAPPED

    @property
    def is_skipped(self) -> bool:
        return self.status is MappingStatus.SKIPPED


UNMIGRATED = Mapping(MappingStatus.UNMIGRATED)
SKIPPED = Mapping(MappingStatus.SKIPPED)


def is_valid_id(value: Optional[str]) -> bool:
    """Return True if ``value`` is a well-formed server id (a UUID)."""
    if not value or not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class IdentifierRemapper:
    """Reads and writes the asset/tag/stack/album tables of a checkpoint."""

    def __init__(self, record: CheckpointRecord):
        self.record = record

    def _lookup(self, table: Dict[str, str], kind: str, legacy_id: str) -> Mapping:
        value = table.get(legacy_id)
        if value is None:
            return UNMIGRATED
        if value == NONE_SENTINEL:
            return SKIPPED
        if is_valid_id(value):
            return Mapping(MappingStatus.MAPPED, value)
        # Malformed entries are forgotten so the entity is processed again
        logger.warning(f"Dropping malformed {kind} mapping {legacy_id} -> {value!r}")
        del table[legacy_id]
        return UNMIGRATED

    # Assets
    def asset(self, legacy_id: str) -> Mapping:
        return self._lookup(self.record.asset_map, 'asset', legacy_id)

    def map_asset(self, legacy_id: str, new_id: str) -> None:
        self.record.asset_map[legacy_id] = new_id
        self.record.problem_assets.discard(legacy_id)

    def skip_asset(self, legacy_id: str) -> None:
        """Record an asset as intentionally not migrated."""
        self.record.asset_map[legacy_id] = NONE_SENTINEL
        self.record.problem_assets.discard(legacy_id)

    def mark_trashed(self, legacy_id: str) -> None:
        self.record.trashed_assets.add(legacy_id)
        self.record.problem_assets.discard(legacy_id)

    def is_trashed(self, legacy_id: str) -> bool:
        return legacy_id in self.record.trashed_assets

    def mark_problem(self, legacy_id: str) -> None:
        self.record.problem_assets.add(legacy_id)

    def clear_problem(self, legacy_id: str) -> None:
        self.record.problem_assets.discard(legacy_id)

    def is_problem(self, legacy_id: str) -> bool:
        return legacy_id in self.record.problem_assets

    def resolve_members(self, legacy_ids: Iterable[str]) -> "MemberResolution":
        """
        Map a tag or album membership list to new asset ids.

        Trashed and intentionally skipped assets are dropped. Members without
        a new id are reported as missing rather than silently discarded.
        """
        new_ids: List[str] = []
        missing: List[str] = []
        seen = set()
        for legacy_id in legacy_ids:
            if legacy_id in seen or self.is_trashed(legacy_id):
                continue
            seen.add(legacy_id)
            mapping = self.asset(legacy_id)
            if mapping.is_mapped:
                new_ids.append(mapping.new_id)
            elif not mapping.is_skipped:
                missing.append(legacy_id)
        return MemberResolution(new_ids=new_ids, missing=missing)

    # Tags
    def tag(self, legacy_id: str) -> Mapping:
        return self._lookup(self.record.tag_map, 'tag', legacy_id)

    def map_tag(self, legacy_id: str, new_id: str) -> None:
        self.record.tag_map[legacy_id] = new_id

    # Stacks
    def stack(self, legacy_id: str) -> Mapping:
        return self._lookup(self.record.stack_map, 'stack', legacy_id)

    def map_stack(self, legacy_id: str, new_id: str) -> None:
        self.record.stack_map[legacy_id] = new_id

    def mark_problem_stack(self, legacy_id: str) -> None:
        self.record.problem_stacks.add(legacy_id)

    def is_problem_stack(self, legacy_id: str) -> bool:
        return legacy_id in self.record.problem_stacks

    # Albums
    def album(self, legacy_id: str) -> Mapping:
        return self._lookup(self.record.album_map, 'album', legacy_id)

    def map_album(self, legacy_id: str, new_id: str) -> None:
        self.record.album_map[legacy_id] = new_id


@dataclass
class MemberResolution:
    """Result of mapping a membership list through the asset table."""
    new_ids: List[str]
    missing: List[str]
