"""
Read the legacy database export.

The export is a directory of tab-separated text files, one per table, each
starting with a header row. Tables are streamed line by line so that only the
rows belonging to the migrated user are ever held in memory.
"""
import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

from immich_migration.exceptions import SourceParseError
from immich_migration.models import (
    LegacyAlbum,
    LegacyAsset,
    LegacyStack,
    nullable,
    nullable_id,
)

logger = logging.getLogger(__name__)

ASSETS_TABLE = "assets.txt"
TAGS_TABLE = "tags.txt"
TAGS_CLOSURE_TABLE = "tags closure.txt"
TAGS_ASSETS_TABLE = "tags assets.txt"
ALBUMS_TABLE = "albums.txt"
ALBUM_ASSETS_TABLE = "files in albums.txt"
STACKS_TABLE = "asset stacks.txt"

# Positions of the assets table columns used by the migration
_ASSET_ID = 0
_DEVICE_ASSET_ID = 1
_OWNER_ID = 2
_DEVICE_ID = 3
_TYPE = 4
_ORIGINAL_PATH = 5
_FILE_CREATED_AT = 6
_FILE_MODIFIED_AT = 7
_LIVE_PHOTO_VIDEO_ID = 13
_ORIGINAL_FILE_NAME = 17
_SIDECAR_PATH = 18
_STACK_ID = 25
_DUPLICATE_ID = 26
_STATUS = 27
_UPDATE_ID = 28

_REQUIRED_ASSET_FIELDS = (
    _ASSET_ID, _DEVICE_ASSET_ID, _DEVICE_ID, _ORIGINAL_PATH, _FILE_CREATED_AT,
    _FILE_MODIFIED_AT, _LIVE_PHOTO_VIDEO_ID, _ORIGINAL_FILE_NAME, _SIDECAR_PATH, _STATUS,
)


def _field(fields: List[str], index: int) -> Optional[str]:
    return fields[index] if index < len(fields) else None


class ExportParser:
    """
    Parses the tables of a legacy export for a single user.

    Ownership checks compare ids case-insensitively.
    """

    def __init__(self, db_files_dir: Path, old_user_id: str):
        """
        Initialize the export parser.

        Args:
            db_files_dir: Directory holding the exported table files
            old_user_id: Legacy id of the user being migrated
        """
        self.db_files_dir = Path(db_files_dir)
        self.old_user_id = old_user_id.lower()

    def _is_owner(self, owner_id: Optional[str]) -> bool:
        return bool(owner_id) and owner_id.lower() == self.old_user_id

    def iter_rows(self, table: str) -> Iterator[Tuple[str, List[str]]]:
        """
        Yield ``(raw_line, fields)`` for every data row of a table.

        The header row and blank lines are skipped.
        """
        path = self.db_files_dir / table
        with open(path, 'r', encoding='utf-8', newline='') as f:
            header = True
            for raw in f:
                line = raw.rstrip('\r\n')
                if header:
                    header = False
                    continue
                if not line.strip():
                    continue
                yield line, line.split('\t')

    def _iter_pairs(self, table: str) -> Iterator[Tuple[str, str]]:
        for line, fields in self.iter_rows(table):
            first, second = _field(fields, 0), _field(fields, 1)
            if not first or not second:
                raise SourceParseError(table, line)
            yield first, second

    # Stacks
    def read_stacks(self) -> Dict[str, LegacyStack]:
        """Read stack definitions (stack id -> primary legacy asset id)."""
        stacks: Dict[str, LegacyStack] = {}
        for stack_id, primary_id in self._iter_pairs(STACKS_TABLE):
            stacks[stack_id] = LegacyStack(id=stack_id, primary_asset_id=primary_id)
        logger.info(f"Read {len(stacks)} stack definitions")
        return stacks

    # Albums
    def read_albums(self, trashed_assets: Optional[Set[str]] = None) -> Dict[str, LegacyAlbum]:
        """
        Read the user's albums and their members.

        Args:
            trashed_assets: Legacy asset ids already known to be trashed

        Returns:
            Dictionary mapping legacy album id to LegacyAlbum
        """
        trashed_assets = trashed_assets or set()
        albums: Dict[str, LegacyAlbum] = {}

        for line, fields in self.iter_rows(ALBUMS_TABLE):
            album_id = _field(fields, 0)
            owner_id = _field(fields, 1)
            name = _field(fields, 2)
            if not album_id or not owner_id or not name:
                raise SourceParseError(ALBUMS_TABLE, line)
            if not self._is_owner(owner_id):
                continue
            albums[album_id] = LegacyAlbum(
                id=album_id,
                name=name,
                description=nullable(_field(fields, 6)),
            )

        members = 0
        for album_id, asset_id in self._iter_pairs(ALBUM_ASSETS_TABLE):
            # Albums not in the map belong to someone else
            album = albums.get(album_id)
            if album is None or asset_id in trashed_assets:
                continue
            album.assets.add(asset_id)
            members += 1

        logger.info(f"Read {len(albums)} albums with {members} memberships")
        return albums

    # Tags
    def iter_tags(self) -> Iterator[Tuple[str, str]]:
        """Yield ``(tag_id, name)`` for the user's tags."""
        for line, fields in self.iter_rows(TAGS_TABLE):
            tag_id = _field(fields, 0)
            user_id = _field(fields, 1)
            name = _field(fields, 2)
            if not tag_id or not user_id or not name:
                raise SourceParseError(TAGS_TABLE, line)
            if self._is_owner(user_id):
                yield tag_id, name

    def iter_tag_closure(self) -> Iterator[Tuple[str, str]]:
        """Yield ``(ancestor, descendant)`` pairs, self pairs included."""
        return self._iter_pairs(TAGS_CLOSURE_TABLE)

    def iter_tag_assets(self) -> Iterator[Tuple[str, str]]:
        """Yield ``(asset_id, tag_id)`` pairs."""
        return self._iter_pairs(TAGS_ASSETS_TABLE)

    # Assets
    def parse_asset(self, line: str, fields: List[str]) -> LegacyAsset:
        """Build a LegacyAsset from a split row, validating required columns."""
        if any(not _field(fields, i) for i in _REQUIRED_ASSET_FIELDS):
            raise SourceParseError(ASSETS_TABLE, line)
        return LegacyAsset(
            id=fields[_ASSET_ID],
            device_asset_id=fields[_DEVICE_ASSET_ID],
            owner_id=fields[_OWNER_ID],
            device_id=fields[_DEVICE_ID],
            type=fields[_TYPE],
            file_path=fields[_ORIGINAL_PATH],
            file_created_at=fields[_FILE_CREATED_AT],
            file_modified_at=fields[_FILE_MODIFIED_AT],
            live_photo_video_id=nullable_id(fields[_LIVE_PHOTO_VIDEO_ID]),
            filename=fields[_ORIGINAL_FILE_NAME],
            sidecar_path=nullable(fields[_SIDECAR_PATH]),
            status=fields[_STATUS],
            stack_id=nullable_id(_field(fields, _STACK_ID)),
            duplicate_id=nullable_id(_field(fields, _DUPLICATE_ID)),
            update_id=nullable(_field(fields, _UPDATE_ID)),
        )

    def read_assets(self) -> List[LegacyAsset]:
        """Read every asset row owned by the user."""
        assets = []
        for line, fields in self.iter_rows(ASSETS_TABLE):
            if not self._is_owner(_field(fields, _OWNER_ID)):
                continue
            assets.append(self.parse_asset(line, fields))
        logger.info(f"Read {len(assets)} assets for user")
        return assets
