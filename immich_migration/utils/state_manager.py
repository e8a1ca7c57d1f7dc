"""
Checkpoint persistence for resumable migrations.

One JSON document per migrated user holds every piece of progress: completed
steps, the legacy -> new id tables, the tag forward map, stack staging and the
trashed/problem sets. It is always rewritten as a whole.
"""
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Dict, List, Optional, Set, Union

from immich_migration.exceptions import CheckpointError

logger = logging.getLogger(__name__)

# Stored in the remap tables for entities deliberately left behind
NONE_SENTINEL = "NONE"


class StepKind(IntEnum):
    """Migration steps. The numeric values are what the checkpoint stores."""
    CREATE_TAGS = 1
    ASSETS = 2
    TAG_ASSETS = 3
    STACKS = 4
    ALBUMS = 5

    @classmethod
    def parse(cls, value: Union[str, int, 'StepKind']) -> 'StepKind':
        """Accept a StepKind, its number, or its name (``"tag_assets"``, ``"TagAssets"``)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        normalized = text.replace('-', '').replace('_', '').upper()
        for member in cls:
            if member.name.replace('_', '') == normalized:
                return member
        raise ValueError(f"Unknown step: {value}")


# Order in which the sequencer executes steps
STEP_ORDER: List[StepKind] = [
    StepKind.CREATE_TAGS,
    StepKind.ASSETS,
    StepKind.TAG_ASSETS,
    StepKind.STACKS,
    StepKind.ALBUMS,
]


class StepState(Enum):
    """States a step can be in during a run."""
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass
class TagEntry:
    """Forward-map entry for a legacy tag."""
    name: str
    parent_id: Optional[str] = None
    assets: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {'name': self.name, 'parentID': self.parent_id, 'assets': list(self.assets)}

    @classmethod
    def from_dict(cls, data: Dict) -> 'TagEntry':
        return cls(
            name=data['name'],
            parent_id=data.get('parentID'),
            assets=list(data.get('assets') or []),
        )


@dataclass
class CheckpointRecord:
    """In-memory form of a user's progress file."""
    interrupted: bool = False
    steps_completed: List[StepKind] = field(default_factory=list)
    asset_map: Dict[str, str] = field(default_factory=dict)
    tag_map: Dict[str, str] = field(default_factory=dict)
    stack_map: Dict[str, str] = field(default_factory=dict)
    album_map: Dict[str, str] = field(default_factory=dict)
    tag_fwd_map: Dict[str, TagEntry] = field(default_factory=dict)
    stack_staging: Dict[str, List[str]] = field(default_factory=dict)
    problem_assets: Set[str] = field(default_factory=set)
    trashed_assets: Set[str] = field(default_factory=set)
    problem_stacks: Set[str] = field(default_factory=set)

    def is_step_completed(self, step: StepKind) -> bool:
        return step in self.steps_completed

    def mark_step_completed(self, step: StepKind) -> None:
        if step not in self.steps_completed:
            self.steps_completed.append(step)

    def to_dict(self) -> Dict:
        """Serialize using the on-disk field names and markers."""
        return {
            'interrupted': self.interrupted,
            'stepsCompleted': [int(s) for s in self.steps_completed],
            'assetMap': dict(self.asset_map),
            'tagMap': dict(self.tag_map),
            'tagFwdMap': {k: v.to_dict() for k, v in self.tag_fwd_map.items()},
            'albumMap': dict(self.album_map),
            'stackMap': dict(self.stack_map),
            'stackStaging': {k: list(v) for k, v in self.stack_staging.items()},
            'problemAssets': {k: "" for k in sorted(self.problem_assets)},
            'trashedAssets': {k: True for k in sorted(self.trashed_assets)},
            'problemStacks': {k: "" for k in sorted(self.problem_stacks)},
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'CheckpointRecord':
        """Build a record, defaulting every missing field."""
        steps = []
        for raw in data.get('stepsCompleted') or []:
            step = StepKind.parse(raw)
            if step not in steps:
                steps.append(step)
        return cls(
            interrupted=bool(data.get('interrupted', False)),
            steps_completed=steps,
            asset_map=dict(data.get('assetMap') or {}),
            tag_map=dict(data.get('tagMap') or {}),
            stack_map=dict(data.get('stackMap') or {}),
            album_map=dict(data.get('albumMap') or {}),
            tag_fwd_map={
                k: TagEntry.from_dict(v) for k, v in (data.get('tagFwdMap') or {}).items()
            },
            stack_staging={k: list(v) for k, v in (data.get('stackStaging') or {}).items()},
            problem_assets=set(data.get('problemAssets') or {}),
            trashed_assets=set(data.get('trashedAssets') or {}),
            problem_stacks=set(data.get('problemStacks') or {}),
        )


class CheckpointStore:
    """Loads and atomically saves the checkpoint file for one user."""

    def __init__(self, checkpoint_file: Path):
        """
        Initialize the checkpoint store.

        Args:
            checkpoint_file: Path of the user's progress JSON file
        """
        self.checkpoint_file = Path(checkpoint_file)

    def load(self) -> CheckpointRecord:
        """
        Load the checkpoint, creating an empty one if the file is absent or empty.

        Returns:
            CheckpointRecord as stored, ``interrupted`` included

        Raises:
            CheckpointError: If the file exists but cannot be parsed
        """
        self.checkpoint_file.parent.mkdir(parents=True, exist_ok=True)
        if not self.checkpoint_file.exists():
            self.checkpoint_file.touch()

        try:
            text = self.checkpoint_file.read_text(encoding='utf-8')
        except OSError as e:
            raise CheckpointError(f"Could not read checkpoint {self.checkpoint_file}: {e}") from e

        if not text.strip():
            logger.info(f"📂 No existing progress found at: {self.checkpoint_file}")
            logger.info("   Starting fresh")
            return CheckpointRecord()

        try:
            data = json.loads(text)
            record = CheckpointRecord.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CheckpointError(
                f"Checkpoint {self.checkpoint_file} is corrupt, refusing to overwrite it: {e}"
            ) from e

        logger.info(f"📂 Loaded progress from: {self.checkpoint_file}")
        logger.info(f"   Steps completed: {[s.name for s in record.steps_completed] or 'none'}")
        logger.info(f"   Assets mapped: {len(record.asset_map)}, tags mapped: {len(record.tag_map)}")

        if record.interrupted:
            logger.warning("Previous run for this user was interrupted due to an exception")
        return record

    def save(self, record: CheckpointRecord) -> None:
        """
        Overwrite the checkpoint file with the full record.

        The record is written to a temporary file next to the target and moved
        into place, so readers only ever see the old or the new document.
        """
        self.checkpoint_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.checkpoint_file.name}.",
            suffix='.tmp',
            dir=str(self.checkpoint_file.parent),
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(record.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.checkpoint_file)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            logger.error(f"❌ Could not save progress to {self.checkpoint_file}: {e}")
            raise CheckpointError(f"Could not save checkpoint {self.checkpoint_file}: {e}") from e
        logger.debug(f"Progress saved to: {self.checkpoint_file}")

    @staticmethod
    def clear_problems(record: CheckpointRecord, assets: bool = True, stacks: bool = True) -> Dict[str, int]:
        """Release problem items so the next run retries them."""
        cleared = {'assets': 0, 'stacks': 0}
        if assets:
            cleared['assets'] = len(record.problem_assets)
            record.problem_assets.clear()
        if stacks:
            cleared['stacks'] = len(record.problem_stacks)
            record.problem_stacks.clear()
        logger.info(f"Cleared {cleared['assets']} problem assets and {cleared['stacks']} problem stacks")
        return cleared

    @staticmethod
    def get_statistics(record: CheckpointRecord) -> Dict:
        """Get statistics about current progress."""
        skipped = sum(1 for v in record.asset_map.values() if v == NONE_SENTINEL)
        return {
            'interrupted': record.interrupted,
            'steps_completed': [s.name for s in record.steps_completed],
            'assets_mapped': len(record.asset_map) - skipped,
            'assets_skipped': skipped,
            'assets_trashed': len(record.trashed_assets),
            'assets_with_problems': len(record.problem_assets),
            'tags_mapped': len(record.tag_map),
            'tags_known': len(record.tag_fwd_map),
            'stacks_staged': len(record.stack_staging),
            'stacks_created': len(record.stack_map),
            'stacks_with_problems': len(record.problem_stacks),
            'albums_mapped': len(record.album_map),
        }
