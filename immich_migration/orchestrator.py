"""
Migration orchestrator: runs the ordered migration steps for one user.
"""
import logging
from typing import Dict, Iterable, List, Optional

from immich_migration.config import MigrationConfig
from immich_migration.models import LegacyAlbum, LegacyAsset, LegacyStack
from immich_migration.parser.export_parser import ExportParser
from immich_migration.processor.assignment import AlbumAssembler, TagAssigner
from immich_migration.processor.stack_assembler import StackAssembler
from immich_migration.processor.tag_hierarchy import TagHierarchyBuilder
from immich_migration.remapper import IdentifierRemapper
from immich_migration.uploader.asset_uploader import AssetUploader
from immich_migration.uploader.immich_client import ImmichClient
from immich_migration.utils.metrics import MetricsTracker, StepMetrics
from immich_migration.utils.state_manager import (
    STEP_ORDER,
    CheckpointRecord,
    CheckpointStore,
    StepKind,
    StepState,
)

logger = logging.getLogger(__name__)

# Steps that need every asset resolved before they may run
REQUIRES_ASSETS = {StepKind.TAG_ASSETS, StepKind.STACKS, StepKind.ALBUMS}


class MigrationOrchestrator:
    """Orchestrates the migration of one user's library."""

    def __init__(self, config: MigrationConfig, client=None,
                 store: Optional[CheckpointStore] = None):
        """
        Initialize the orchestrator.

        Args:
            config: Loaded migration configuration
            client: Immich client; built from the configuration if omitted
            store: Checkpoint store; defaults to the user's progress file
        """
        self.config = config
        self.user = config.selected_user
        self.client = client or ImmichClient(
            base_url=config.immich.api_base_url,
            api_key=self.user.api_key,
            timeout=config.immich.timeout,
            max_retries=config.immich.max_retries,
        )
        self.store = store or CheckpointStore(config.progress_file)
        self.parser = ExportParser(config.source.db_files_path, self.user.old_user_id)
        self.metrics = MetricsTracker()

        self.record: Optional[CheckpointRecord] = None
        self.remapper: Optional[IdentifierRemapper] = None
        self.step_states: Dict[StepKind, StepState] = {s: StepState.NOT_STARTED for s in STEP_ORDER}

        self.stacks: Dict[str, LegacyStack] = {}
        self.albums: Dict[str, LegacyAlbum] = {}
        self.assets: List[LegacyAsset] = []

    def steps_to_run(self, requested: Iterable[StepKind]) -> List[StepKind]:
        """Requested steps that are not completed, in execution order."""
        requested = set(requested)
        return [
            s for s in STEP_ORDER
            if s in requested and not self.record.is_step_completed(s)
        ]

    def run(self, steps: Optional[Iterable[StepKind]] = None) -> Dict:
        """
        Run the migration.

        Args:
            steps: Steps to run; defaults to the configured ``intended_steps``

        Returns:
            Run summary (see ``summary``)

        Raises:
            MigrationError: Any fatal error, after the checkpoint was saved
                with ``interrupted`` set
        """
        requested = list(steps) if steps is not None else list(self.config.intended_steps)
        logger.info(f"Preparing to migrate user: {self.config.user_to_migrate}")

        self.record = self.store.load()
        # A new run starts clean; the flag is set again if this one fails
        self.record.interrupted = False
        self.remapper = IdentifierRemapper(self.record)
        for step in self.record.steps_completed:
            self.step_states[step] = StepState.COMPLETED

        to_run = self.steps_to_run(requested)
        if len(to_run) < len(set(requested)):
            logger.info("Configuration had steps that have already been completed")

        try:
            self._prepare(to_run)
            for step in to_run:
                if step in REQUIRES_ASSETS and not self.record.is_step_completed(StepKind.ASSETS):
                    logger.warning(f"Skipping {step.name}: the ASSETS step has not completed")
                    continue
                self._run_step(step)
                self.store.save(self.record)
        except (Exception, KeyboardInterrupt):
            logger.error("Migration interrupted, saving progress")
            self.record.interrupted = True
            self.store.save(self.record)
            self.metrics.save_to_file(self.config.metrics_file)
            raise

        self.store.save(self.record)
        self.metrics.save_to_file(self.config.metrics_file)
        logger.info("Migration configuration executed")
        self._log_summary()
        return self.summary()

    def _prepare(self, to_run: List[StepKind]) -> None:
        """Read the parts of the export needed by the steps about to run."""
        if StepKind.ASSETS in to_run:
            logger.info("Building asset stacks")
            self.stacks = self.parser.read_stacks()
            if self.record.stack_staging and not self.record.is_step_completed(StepKind.STACKS):
                logger.info("Stacks were previously staged that were not finished")

        if StepKind.ALBUMS in to_run:
            logger.info("Getting list of albums")
            self.albums = self.parser.read_albums(self.record.trashed_assets)

        if (self.record.is_step_completed(StepKind.ASSETS)
                and self.record.is_step_completed(StepKind.CREATE_TAGS)):
            logger.info("Tag mapping skipped due to existing progress")
        else:
            logger.info("Building list of tags")
            TagHierarchyBuilder(self.remapper).build(
                self.parser.iter_tags(),
                self.parser.iter_tag_closure(),
                self.parser.iter_tag_assets(),
            )

        if StepKind.ASSETS in to_run:
            logger.info("Loading list of assets")
            self.assets = self.parser.read_assets()

        logger.info(
            "Preparation complete - "
            f"tags: {len(self.record.tag_fwd_map)}, albums: {len(self.albums)}, "
            f"stacks: {len(self.stacks)}, assets: {len(self.assets)}"
        )

    def _run_step(self, step: StepKind) -> None:
        self.step_states[step] = StepState.RUNNING
        metrics = self.metrics.start_step(step.name)
        try:
            completed = self._dispatch(step, metrics)
        finally:
            self.metrics.finish_step()

        if completed:
            self.record.mark_step_completed(step)
            self.step_states[step] = StepState.COMPLETED
        else:
            logger.warning(
                f"Step {step.name} did not account for every item "
                f"({metrics.describe()} of {metrics.total}); it will resume on the next run"
            )

    def _dispatch(self, step: StepKind, metrics: StepMetrics) -> bool:
        show = self.config.show_progress
        if step is StepKind.CREATE_TAGS:
            return TagHierarchyBuilder(self.remapper, show).create_tags(self.client, metrics)
        if step is StepKind.ASSETS:
            uploader = AssetUploader(
                client=self.client,
                remapper=self.remapper,
                stack_assembler=StackAssembler(self.remapper, self.stacks, show),
                dataset_dir=self.config.source.dataset_path,
                path_prefix=self.config.source.path_prefix,
                directory_aliases=self.config.source.directory_aliases,
                show_progress=show,
            )
            return uploader.upload_all(self.assets, metrics)
        if step is StepKind.TAG_ASSETS:
            return TagAssigner(self.remapper, show).assign(self.client, metrics)
        if step is StepKind.STACKS:
            return StackAssembler(self.remapper, self.stacks, show).create_stacks(self.client, metrics)
        if step is StepKind.ALBUMS:
            return AlbumAssembler(self.remapper, self.albums, show).assemble(self.client, metrics)
        raise ValueError(f"Unknown step: {step}")

    def _log_summary(self) -> None:
        logger.info("=" * 60)
        logger.info("Migration summary")
        for step in STEP_ORDER:
            line = f"  {step.name}: {self.step_states[step].value}"
            metrics = self.metrics.steps.get(step.name)
            if metrics:
                line += f" ({metrics.describe()}, {metrics.duration:.1f}s)"
            logger.info(line)
        if self.record.problem_assets:
            logger.warning(f"  {len(self.record.problem_assets)} assets are marked as problems")
        logger.info("=" * 60)

    def summary(self) -> Dict:
        """Step states, per-step counters and checkpoint statistics."""
        return {
            'user': self.config.user_to_migrate,
            'interrupted': bool(self.record and self.record.interrupted),
            'steps': {s.name: state.value for s, state in self.step_states.items()},
            'metrics': self.metrics.get_summary(),
            'progress': CheckpointStore.get_statistics(self.record) if self.record else {},
        }
