"""
Group new asset ids into stacks and materialize them on the server.

Asset ids only exist once assets are uploaded, so stacks are staged while the
asset step runs and created afterwards. The staging lists live in the
checkpoint and survive restarts.
"""
import logging
from typing import Dict, List

from tqdm import tqdm

from immich_migration.exceptions import RemoteIdError
from immich_migration.models import LegacyStack
from immich_migration.remapper import IdentifierRemapper, is_valid_id
from immich_migration.utils.metrics import StepMetrics
from immich_migration.utils.state_manager import NONE_SENTINEL

logger = logging.getLogger(__name__)

# A stack needs a primary plus at least one other asset
MIN_STACK_SIZE = 2


class StackAssembler:
    """Stages and creates stacks for one user."""

    def __init__(self, remapper: IdentifierRemapper, stacks: Dict[str, LegacyStack],
                 show_progress: bool = True):
        """
        Args:
            remapper: Remapper over the run's checkpoint
            stacks: Legacy stack definitions keyed by legacy stack id
            show_progress: Render a progress bar while creating stacks
        """
        self.remapper = remapper
        self.stacks = stacks
        self.show_progress = show_progress

    @property
    def staging(self) -> Dict[str, List[str]]:
        return self.remapper.record.stack_staging

    def stage(self, stack_id: str, legacy_asset_id: str, new_asset_id: str) -> None:
        """
        Add a new asset id to its stack, primary first.

        Staging the same id twice is a no-op, except that a primary that was
        appended before being recognised is moved to the front.
        """
        stack = self.stacks.get(stack_id)
        if stack is None or self.remapper.stack(stack_id).is_mapped:
            return

        staged = self.staging.setdefault(stack_id, [])
        is_primary = legacy_asset_id == stack.primary_asset_id
        if new_asset_id in staged:
            if is_primary and staged[0] != new_asset_id:
                staged.remove(new_asset_id)
                staged.insert(0, new_asset_id)
            return

        if is_primary:
            staged.insert(0, new_asset_id)
        else:
            staged.append(new_asset_id)

    def create_stacks(self, client, metrics: StepMetrics) -> bool:
        """
        Create every staged stack that has enough assets.

        Stacks with fewer than two assets are recorded as problems and never
        retried; they count as skipped.

        Returns:
            True if every staged stack is now accounted for
        """
        metrics.total = len(self.staging)
        progress = tqdm(list(self.staging.items()), desc="Creating stacks", unit="stack",
                        disable=not self.show_progress)
        for stack_id, asset_ids in progress:
            if self.remapper.stack(stack_id).is_mapped:
                metrics.count('skipped')
                continue

            if self.remapper.is_problem_stack(stack_id):
                metrics.count('skipped')
                continue

            if len(asset_ids) < MIN_STACK_SIZE:
                logger.warning(f"Stack ID {stack_id} does not have enough assets to form a stack")
                self.remapper.mark_problem_stack(stack_id)
                metrics.count('problems')
                metrics.count('skipped')
                continue

            new_id = client.create_stack(list(asset_ids))
            if new_id == NONE_SENTINEL:
                raise RemoteIdError(f'Old stack ID "{stack_id}" returned NONE')
            if not is_valid_id(new_id):
                raise RemoteIdError(f'Old stack ID "{stack_id}" could not be created (id {new_id!r})')

            self.remapper.map_stack(stack_id, new_id)
            metrics.count('created')
            progress.set_postfix_str(metrics.describe())

        return metrics.done('created', 'skipped') == len(self.staging)
