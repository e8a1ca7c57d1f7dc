"""Tag, stack and album processing for migrated assets."""

from immich_migration.processor.tag_hierarchy import TagHierarchyBuilder
from immich_migration.processor.stack_assembler import StackAssembler
from immich_migration.processor.assignment import AlbumAssembler, TagAssigner

__all__ = ['TagHierarchyBuilder', 'StackAssembler', 'TagAssigner', 'AlbumAssembler']
