"""
Attach migrated assets to their tags and albums.

Both steps run only after every asset has a new id or is known to be trashed
or skipped, so an unmapped member here means the checkpoint is inconsistent.
"""
import logging
from typing import Dict, List

from tqdm import tqdm

from immich_migration.exceptions import AssignmentError, RemoteIdError, UnmappedMemberError
from immich_migration.models import LegacyAlbum
from immich_migration.remapper import IdentifierRemapper, is_valid_id
from immich_migration.uploader.immich_client import DUPLICATE_ERROR, BulkIdResult
from immich_migration.utils.metrics import StepMetrics

logger = logging.getLogger(__name__)


def check_bulk_results(results: List[BulkIdResult], target: str) -> int:
    """
    Raise if a bulk call reported anything other than success or duplicate.

    Returns:
        Number of ids that were already present
    """
    errors = [r for r in results if r.error and r.error != DUPLICATE_ERROR]
    if errors:
        details = "\n".join(f"{r.id}: {r.error}" for r in errors)
        raise AssignmentError(f"Assigning assets to {target} failed:\n{details}")
    return sum(1 for r in results if r.error == DUPLICATE_ERROR)


class TagAssigner:
    """Runs the tag-assignment step."""

    def __init__(self, remapper: IdentifierRemapper, show_progress: bool = True):
        self.remapper = remapper
        self.show_progress = show_progress

    def assign(self, client, metrics: StepMetrics) -> bool:
        """
        Tag every migrated asset with its migrated tags.

        Returns:
            True if every tag was populated
        """
        tags = self.remapper.record.tag_fwd_map
        metrics.total = len(tags)
        progress = tqdm(list(tags.items()), desc="Populating tags", unit="tag",
                        disable=not self.show_progress)
        for legacy_tag_id, entry in progress:
            tag = self.remapper.tag(legacy_tag_id)
            if not tag.is_mapped:
                raise UnmappedMemberError(f"Tag {legacy_tag_id} is unmapped in progress")

            members = self.remapper.resolve_members(entry.assets)
            if members.missing:
                raise UnmappedMemberError(
                    f"Assets missing for new tag {tag.new_id}: {members.missing}"
                )

            if members.new_ids:
                results = client.tag_assets(tag.new_id, members.new_ids)
                already = check_bulk_results(results, f"tag '{entry.name}'")
                metrics.count('assignments', len(members.new_ids) - already)
            metrics.count('populated')
            progress.set_postfix_str(metrics.describe())

        return metrics.get('populated') == len(tags)


class AlbumAssembler:
    """Runs the album step: creates new albums and tops up existing ones."""

    def __init__(self, remapper: IdentifierRemapper, albums: Dict[str, LegacyAlbum],
                 show_progress: bool = True):
        self.remapper = remapper
        self.albums = albums
        self.show_progress = show_progress

    def assemble(self, client, metrics: StepMetrics) -> bool:
        """
        Create or update every album of the user.

        Returns:
            True if every album was created or updated
        """
        metrics.total = len(self.albums)
        progress = tqdm(list(self.albums.items()), desc="Building albums", unit="album",
                        disable=not self.show_progress)
        for legacy_album_id, album in progress:
            members = self.remapper.resolve_members(album.assets)
            if members.missing:
                raise UnmappedMemberError(
                    f'Assets missing for album "{album.name}" ({legacy_album_id}): {members.missing}'
                )

            existing = self.remapper.album(legacy_album_id)
            if existing.is_mapped:
                self._update(client, album, existing.new_id, members.new_ids)
                metrics.count('updated')
            else:
                new_id = client.create_album(album.name, album.description, members.new_ids)
                if not is_valid_id(new_id):
                    raise RemoteIdError(
                        f'Album "{album.name}" ({legacy_album_id}) returned invalid id {new_id!r}'
                    )
                self.remapper.map_album(legacy_album_id, new_id)
                metrics.count('created')
            progress.set_postfix_str(metrics.describe())

        return metrics.done('created', 'updated') == len(self.albums)

    def _update(self, client, album: LegacyAlbum, album_id: str, new_ids: List[str]) -> None:
        info = client.get_album_info(album_id)
        present = set(info.asset_ids)
        to_add = [a for a in new_ids if a not in present]
        if not to_add:
            return
        results = client.add_assets_to_album(info.id, to_add)
        check_bulk_results(results, f"album '{album.name}'")
        logger.info(f"Assets updated for {album.name} ({len(to_add)} added)")
