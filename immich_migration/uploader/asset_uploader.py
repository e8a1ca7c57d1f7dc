"""
Upload legacy assets to Immich exactly once.

Each asset is classified before anything is sent: already migrated, trashed,
already present on the server under its device asset id, or previously failed.
Only the remaining assets are read from the dataset and uploaded.
"""
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import requests
from tqdm import tqdm

from immich_migration.exceptions import (
    AssetUploadIncompleteError,
    ImmichApiError,
    LivePhotoDependencyError,
    RemoteIdError,
)
from immich_migration.models import IMAGE, VIDEO, LegacyAsset
from immich_migration.processor.stack_assembler import StackAssembler
from immich_migration.remapper import IdentifierRemapper, is_valid_id
from immich_migration.utils.metrics import StepMetrics
from immich_migration.utils.state_manager import NONE_SENTINEL

logger = logging.getLogger(__name__)

# Videos go first so live photos can reference their video half
UPLOAD_ORDER = (VIDEO, IMAGE)

DEFAULT_PATH_PREFIX = "upload/"
DEFAULT_DIRECTORY_ALIASES = {
    "upload": "uploads",
    "encoded-video": "encoded_videos",
}

# Counters that together account for every asset when the step is complete
DONE_COUNTERS = ('duplicates', 'created', 'tracked', 'trashed')


class AssetOutcome(Enum):
    """What happened to one asset during a pass."""
    TRACKED = "tracked"
    TRASHED = "trashed"
    PROBLEM = "problem"
    DUPLICATE = "duplicate"
    CREATED = "created"
    FAILED = "failed"


class AssetUploader:
    """Runs the asset step for one user."""

    def __init__(self, client, remapper: IdentifierRemapper, stack_assembler: StackAssembler,
                 dataset_dir: Path, path_prefix: str = DEFAULT_PATH_PREFIX,
                 directory_aliases: Optional[Dict[str, str]] = None,
                 show_progress: bool = True):
        """
        Initialize the asset uploader.

        Args:
            client: Immich client
            remapper: Remapper over the run's checkpoint
            stack_assembler: Receives new ids of stacked assets
            dataset_dir: Local copy of the legacy upload directory
            path_prefix: Prefix stripped from paths stored in the export
            directory_aliases: Directory renames between export paths and the dataset
            show_progress: Render progress bars
        """
        self.client = client
        self.remapper = remapper
        self.stack_assembler = stack_assembler
        self.dataset_dir = Path(dataset_dir)
        self.path_prefix = path_prefix
        self.directory_aliases = (
            DEFAULT_DIRECTORY_ALIASES if directory_aliases is None else directory_aliases
        )
        self.show_progress = show_progress
        self.had_errors = False

    def resolve_dataset_path(self, legacy_path: str) -> Path:
        """Translate a path recorded in the export into a file in the dataset."""
        relative = legacy_path
        if relative.startswith(self.path_prefix):
            relative = relative[len(self.path_prefix):]
        for original, replacement in self.directory_aliases.items():
            relative = relative.replace(original, replacement, 1)
        return self.dataset_dir / relative

    @staticmethod
    def synthesize_device_asset_id(asset_data: bytes) -> str:
        """
        Build a device asset id for assets that never had one.

        Derived from the wall clock and payload size, so it is only stable
        within a single run.
        """
        return f"{int(time.time() * 1000)}-{len(asset_data)}"

    def _stage(self, asset: LegacyAsset, new_id: str) -> None:
        if asset.stack_id:
            self.stack_assembler.stage(asset.stack_id, asset.id, new_id)

    def upload_all(self, assets: List[LegacyAsset], metrics: StepMetrics) -> bool:
        """
        Run the video pass then the image pass.

        Returns:
            True if every asset is accounted for

        Raises:
            AssetUploadIncompleteError: After both passes, if any upload failed
        """
        metrics.total = len(assets)
        self.had_errors = False

        for asset in assets:
            if asset.type in UPLOAD_ORDER:
                continue
            # Asset types the server cannot take are recorded as not migrated
            if not self.remapper.asset(asset.id).is_mapped:
                logger.warning(f"Skipping asset {asset.id} with unsupported type {asset.type!r}")
                self.remapper.skip_asset(asset.id)
            metrics.count('tracked')

        for media_type in UPLOAD_ORDER:
            batch = [a for a in assets if a.type == media_type]
            progress = tqdm(batch, desc=f"Uploading {media_type.lower()}s", unit="asset",
                            disable=not self.show_progress)
            for asset in progress:
                outcome = self.process_asset(asset, metrics)
                metrics.count(_COUNTER_FOR[outcome])
                progress.set_postfix_str(metrics.describe())

        if self.had_errors:
            raise AssetUploadIncompleteError("Some assets were not uploaded, try again")

        if metrics.get('problems'):
            logger.warning(
                f"{metrics.get('problems')} assets are marked as problems from a previous run; "
                "clear them from the progress file to retry"
            )
        return metrics.done(*DONE_COUNTERS) == len(assets)

    def process_asset(self, asset: LegacyAsset, metrics: StepMetrics) -> AssetOutcome:
        """Classify one asset and upload it if needed."""
        mapping = self.remapper.asset(asset.id)
        if mapping.is_mapped:
            self.remapper.clear_problem(asset.id)
            self._stage(asset, mapping.new_id)
            return AssetOutcome.TRACKED
        if mapping.is_skipped:
            return AssetOutcome.TRACKED

        if asset.is_trashed:
            self.remapper.mark_trashed(asset.id)
            return AssetOutcome.TRASHED

        # A failed upload may still have reached the server
        existing_id = self._find_on_server(asset)
        if existing_id:
            self.remapper.map_asset(asset.id, existing_id)
            self._stage(asset, existing_id)
            return AssetOutcome.DUPLICATE

        if self.remapper.is_problem(asset.id):
            logger.debug(f"Asset {asset.id} failed on a previous run, not retrying")
            return AssetOutcome.PROBLEM

        live_photo_video_id = None
        if asset.live_photo_video_id and asset.live_photo_video_id != NONE_SENTINEL:
            video = self.remapper.asset(asset.live_photo_video_id)
            if not video.is_mapped:
                raise LivePhotoDependencyError(asset.filename, asset.live_photo_video_id)
            live_photo_video_id = video.new_id

        return self._upload(asset, live_photo_video_id, metrics)

    def _find_on_server(self, asset: LegacyAsset) -> Optional[str]:
        """Return the server id of an asset already uploaded from the same device, if any."""
        if asset.device_asset_id == NONE_SENTINEL:
            return None
        existing_ids = self.client.check_existing_assets([asset.device_asset_id], asset.device_id)
        if not existing_ids:
            return None
        candidate = existing_ids[0]
        if candidate == NONE_SENTINEL or not is_valid_id(candidate):
            # Fall through to a normal upload
            return None
        return candidate

    def _upload(self, asset: LegacyAsset, live_photo_video_id: Optional[str],
                metrics: StepMetrics) -> AssetOutcome:
        asset_path = self.resolve_dataset_path(asset.file_path)
        sidecar_path = self.resolve_dataset_path(asset.sidecar_path) if asset.sidecar_path else None
        try:
            asset_data = asset_path.read_bytes()
            sidecar_data = sidecar_path.read_bytes() if sidecar_path else None

            device_asset_id = asset.device_asset_id
            if device_asset_id == NONE_SENTINEL:
                device_asset_id = self.synthesize_device_asset_id(asset_data)

            result = self.client.upload_asset(
                asset_data=asset_data,
                filename=asset.filename,
                device_asset_id=device_asset_id,
                device_id=asset.device_id,
                file_created_at=asset.file_created_at,
                file_modified_at=asset.file_modified_at,
                sidecar_data=sidecar_data,
                live_photo_video_id=live_photo_video_id,
            )
            if result.id == NONE_SENTINEL:
                logger.info(f"Status: {result.status}")
                raise ImmichApiError(f'Old asset ID "{asset.id}" returned NONE')
        except (ImmichApiError, requests.RequestException, OSError) as e:
            self._record_failure(asset, asset_path, sidecar_path, e, metrics)
            return AssetOutcome.FAILED

        if not is_valid_id(result.id):
            raise RemoteIdError(f"Old Asset {asset.id} returned non-UUID ID {result.id!r}")

        self.remapper.map_asset(asset.id, result.id)
        self._stage(asset, result.id)
        metrics.bytes_processed += len(asset_data)
        return AssetOutcome.DUPLICATE if result.is_duplicate else AssetOutcome.CREATED

    def _record_failure(self, asset: LegacyAsset, asset_path: Path, sidecar_path: Optional[Path],
                        error: Exception, metrics: StepMetrics) -> None:
        self.had_errors = True
        self.remapper.mark_problem(asset.id)
        metrics.record_error(f"{asset.id}: {error}")
        cause = getattr(error, '__cause__', None)
        logger.error(
            f"Error uploading asset: {asset.id}\n"
            f"  Type: {asset.type}\n"
            f"  Asset path: {asset_path}\n"
            f"  Sidecar path: {sidecar_path}\n"
            f"  LivePhotoVideoID: {asset.live_photo_video_id}\n"
            f"  Error: {error}"
            + (f"\n  Cause: {cause}" if cause else "")
        )


_COUNTER_FOR = {
    AssetOutcome.TRACKED: 'tracked',
    AssetOutcome.TRASHED: 'trashed',
    AssetOutcome.PROBLEM: 'problems',
    AssetOutcome.DUPLICATE: 'duplicates',
    AssetOutcome.CREATED: 'created',
    AssetOutcome.FAILED: 'failed',
}
