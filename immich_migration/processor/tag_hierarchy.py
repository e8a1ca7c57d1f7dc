"""
Rebuild the legacy tag forest and create it on the server parent-first.

The export stores the hierarchy as a closure table: one row per
(ancestor, descendant) pair, including a row pairing every tag with itself.
The direct parent of a tag is its nearest ancestor, i.e. the ancestor that
itself has the most ancestors.
"""
import logging
from collections import deque
from typing import Dict, Iterable, List, Optional, Set, Tuple

from tqdm import tqdm

from immich_migration.exceptions import RemoteIdError, TagHierarchyError
from immich_migration.remapper import IdentifierRemapper, is_valid_id
from immich_migration.utils.metrics import StepMetrics
from immich_migration.utils.state_manager import TagEntry

logger = logging.getLogger(__name__)


def tag_name_matches(legacy_name: str, remote_name: str) -> bool:
    """
    Decide whether an existing server tag stands in for a legacy tag.

    A server tag counts as equivalent when its name is contained in the legacy
    tag's name.
    """
    return remote_name in legacy_name


class TagHierarchyBuilder:
    """Builds the tag forward map and creates tags on the server."""

    def __init__(self, remapper: IdentifierRemapper, show_progress: bool = True):
        self.remapper = remapper
        self.show_progress = show_progress

    @property
    def tags(self) -> Dict[str, TagEntry]:
        return self.remapper.record.tag_fwd_map

    def build(self, tag_rows: Iterable[Tuple[str, str]],
              closure_pairs: Iterable[Tuple[str, str]],
              tag_asset_pairs: Iterable[Tuple[str, str]]) -> Dict[str, TagEntry]:
        """
        Merge tags read from the export into the checkpoint's forward map.

        Args:
            tag_rows: ``(tag_id, name)`` for the user's tags
            closure_pairs: ``(ancestor, descendant)`` pairs
            tag_asset_pairs: ``(asset_id, tag_id)`` pairs

        Returns:
            The updated forward map (owned by the checkpoint)
        """
        added = 0
        for tag_id, name in tag_rows:
            if tag_id in self.tags:
                continue
            self.tags[tag_id] = TagEntry(name=name)
            added += 1
        logger.info(f"Tags: {added} new, {len(self.tags)} total")

        self.assign_parents(closure_pairs)

        memberships = 0
        for asset_id, tag_id in tag_asset_pairs:
            entry = self.tags.get(tag_id)
            if entry is None:
                continue
            if asset_id not in entry.assets:
                entry.assets.append(asset_id)
                memberships += 1
        logger.info(f"Tag memberships added: {memberships}")
        return self.tags

    def assign_parents(self, closure_pairs: Iterable[Tuple[str, str]]) -> None:
        """Set each unmigrated tag's parent to its nearest ancestor."""
        ancestors: Dict[str, List[str]] = {}
        for ancestor, descendant in closure_pairs:
            if ancestor.lower() == descendant.lower():
                continue
            ancestors.setdefault(descendant, [])
            if ancestor not in ancestors[descendant]:
                ancestors[descendant].append(ancestor)

        for descendant, candidates in ancestors.items():
            if self.remapper.tag(descendant).is_mapped:
                continue
            entry = self.tags.get(descendant)
            if entry is None:
                # Another user's tag
                continue
            entry.parent_id = max(candidates, key=lambda a: len(ancestors.get(a, ())))

    def creation_order(self) -> List[str]:
        """
        Order every tag so that parents come before their children.

        Roots are tags with no parent or whose parent is outside the map;
        the forest is walked breadth-first from them.

        Raises:
            TagHierarchyError: If some tags cannot be reached from a root
        """
        children: Dict[str, List[str]] = {}
        roots: List[str] = []
        for tag_id, entry in self.tags.items():
            if entry.parent_id and entry.parent_id in self.tags:
                children.setdefault(entry.parent_id, []).append(tag_id)
            else:
                roots.append(tag_id)

        order: List[str] = []
        visited: Set[str] = set()
        queue = deque(roots)
        while queue:
            tag_id = queue.popleft()
            if tag_id in visited:
                continue
            visited.add(tag_id)
            order.append(tag_id)
            queue.extend(children.get(tag_id, []))

        unreachable = [t for t in self.tags if t not in visited]
        if unreachable:
            raise TagHierarchyError(f"Tags form a cycle and cannot be ordered: {unreachable}")
        return order

    def _parent_new_id(self, tag_id: str, entry: TagEntry) -> Optional[str]:
        if not entry.parent_id:
            return None
        parent = self.remapper.tag(entry.parent_id)
        if not parent.is_mapped:
            raise TagHierarchyError(
                f"Parent {entry.parent_id} of tag {tag_id} ({entry.name}) has not been created"
            )
        return parent.new_id

    def create_tags(self, client, metrics: StepMetrics) -> bool:
        """
        Create every unmigrated tag on the server.

        Returns:
            True if every tag is now mapped (created or skipped)
        """
        order = self.creation_order()
        metrics.total = len(order)
        existing_tags = client.list_all_tags()
        logger.info(f"Found {len(existing_tags)} tags on the server")

        progress = tqdm(order, desc="Creating tags", unit="tag", disable=not self.show_progress)
        for tag_id in progress:
            entry = self.tags[tag_id]
            if self.remapper.tag(tag_id).is_mapped:
                metrics.count('skipped')
                continue

            existing = next((t for t in existing_tags if tag_name_matches(entry.name, t.name)), None)
            if existing is not None:
                self.remapper.map_tag(tag_id, existing.id)
                metrics.count('skipped')
                logger.debug(f"Tag '{entry.name}' matched existing server tag '{existing.name}'")
                continue

            new_id = client.create_tag(entry.name, self._parent_new_id(tag_id, entry))
            if not is_valid_id(new_id):
                raise RemoteIdError(f"Tag {tag_id} ({entry.name}) returned invalid id {new_id!r}")
            self.remapper.map_tag(tag_id, new_id)
            metrics.count('created')
            progress.set_postfix_str(metrics.describe())

        return metrics.done('created', 'skipped') == len(order)
