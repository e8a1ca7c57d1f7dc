"""
Pytest configuration and shared fixtures.
"""
import uuid
from collections import Counter, defaultdict
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest
import yaml

from immich_migration.config import MigrationConfig
from immich_migration.exceptions import ImmichApiError
from immich_migration.models import NULL_MARKER
from immich_migration.remapper import IdentifierRemapper
from immich_migration.uploader.immich_client import (
    DUPLICATE_ERROR,
    AlbumInfo,
    BulkIdResult,
    RemoteTag,
    UploadResult,
)
from immich_migration.utils.metrics import StepMetrics
from immich_migration.utils.state_manager import CheckpointRecord

OLD_USER_ID = "5a1f0c2e-7d44-4b8a-9f3e-0c6b2d1e8a90"
OTHER_USER_ID = "c0ffee00-1234-4abc-8def-0123456789ab"

ASSET_COLUMNS = 29
TIMESTAMP = "2023-06-01 12:00:00+00"


def new_uuid() -> str:
    return str(uuid.uuid4())


class ExportBuilder:
    """Writes a legacy export (tables + dataset files) into a temp directory."""

    def __init__(self, root: Path):
        self.db_files_dir = root / 'db'
        self.dataset_dir = root / 'dataset'
        self.db_files_dir.mkdir(parents=True, exist_ok=True)
        self.dataset_dir.mkdir(parents=True, exist_ok=True)
        self.tables: Dict[str, List[List[str]]] = defaultdict(list)

    def add_asset(self, asset_id: str, owner: str = OLD_USER_ID, type: str = "IMAGE",
                  device_asset_id: Optional[str] = None, device_id: str = "phone-1",
                  live_photo_video_id: Optional[str] = None, sidecar: bool = False,
                  status: str = "active", stack_id: Optional[str] = None,
                  content: bytes = b"fake media", write_file: bool = True) -> List[str]:
        ext = "mov" if type == "VIDEO" else "jpg"
        file_path = f"upload/library/admin/{asset_id}.{ext}"
        fields = [NULL_MARKER] * ASSET_COLUMNS
        fields[0] = asset_id
        fields[1] = device_asset_id or f"device-{asset_id}"
        fields[2] = owner
        fields[3] = device_id
        fields[4] = type
        fields[5] = file_path
        fields[6] = TIMESTAMP
        fields[7] = TIMESTAMP
        fields[13] = live_photo_video_id or NULL_MARKER
        fields[17] = f"{asset_id}.{ext}"
        fields[18] = f"{file_path}.xmp" if sidecar else NULL_MARKER
        fields[25] = stack_id or NULL_MARKER
        fields[27] = status
        self.tables['assets.txt'].append(fields)

        if write_file:
            target = self.dataset_dir / 'library' / 'admin' / f"{asset_id}.{ext}"
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
            if sidecar:
                Path(f"{target}.xmp").write_bytes(b"<xmp/>")
        return fields

    def add_tag(self, tag_id: str, name: str, owner: str = OLD_USER_ID):
        self.tables['tags.txt'].append([tag_id, owner, name, TIMESTAMP])

    def add_closure(self, ancestor: str, descendant: str):
        self.tables['tags closure.txt'].append([ancestor, descendant])

    def add_tag_asset(self, asset_id: str, tag_id: str):
        self.tables['tags assets.txt'].append([asset_id, tag_id])

    def add_album(self, album_id: str, name: str, owner: str = OLD_USER_ID,
                  description: Optional[str] = None):
        self.tables['albums.txt'].append([
            album_id, owner, name, TIMESTAMP, NULL_MARKER, TIMESTAMP,
            description if description is not None else NULL_MARKER,
        ])

    def add_album_asset(self, album_id: str, asset_id: str):
        self.tables['files in albums.txt'].append([album_id, asset_id])

    def add_stack(self, stack_id: str, primary_asset_id: str):
        self.tables['asset stacks.txt'].append([stack_id, primary_asset_id])

    def write(self) -> Path:
        """Write every table (empty tables get only a header)."""
        for table in ('assets.txt', 'tags.txt', 'tags closure.txt', 'tags assets.txt',
                      'albums.txt', 'files in albums.txt', 'asset stacks.txt'):
            lines = ["header"] + ["\t".join(row) for row in self.tables.get(table, [])]
            (self.db_files_dir / table).write_text("\n".join(lines) + "\n", encoding='utf-8')
        return self.db_files_dir


class FakeImmichServer:
    """In-memory stand-in for the Immich API with the ImmichClient interface."""

    def __init__(self):
        self.tags: Dict[str, RemoteTag] = {}
        self.tag_members: Dict[str, set] = defaultdict(set)
        self.assets: Dict[str, Dict] = {}
        self.stacks: Dict[str, List[str]] = {}
        self.albums: Dict[str, AlbumInfo] = {}
        self.fail_uploads = set()
        self.calls = Counter()

    def created_entities(self) -> int:
        return sum(self.calls[name] for name in ('create_tag', 'upload_asset', 'create_stack', 'create_album'))

    def list_all_tags(self):
        self.calls['list_all_tags'] += 1
        return list(self.tags.values())

    def create_tag(self, name, parent_id=None):
        self.calls['create_tag'] += 1
        tag_id = new_uuid()
        self.tags[tag_id] = RemoteTag(id=tag_id, name=name, value=name, parent_id=parent_id)
        return tag_id

    def tag_assets(self, tag_id, asset_ids):
        self.calls['tag_assets'] += 1
        return self._add_members(self.tag_members[tag_id], asset_ids)

    def check_existing_assets(self, device_asset_ids, device_id):
        self.calls['check_existing_assets'] += 1
        return [
            asset_id for asset_id, asset in self.assets.items()
            if asset['device_id'] == device_id and asset['device_asset_id'] in device_asset_ids
        ]

    def upload_asset(self, asset_data, filename, device_asset_id, device_id,
                     file_created_at, file_modified_at, sidecar_data=None,
                     live_photo_video_id=None):
        self.calls['upload_asset'] += 1
        if filename in self.fail_uploads:
            raise ImmichApiError(f"upload of {filename} failed", status_code=500)
        asset_id = new_uuid()
        self.assets[asset_id] = {
            'filename': filename,
            'device_asset_id': device_asset_id,
            'device_id': device_id,
            'live_photo_video_id': live_photo_video_id,
            'sidecar': sidecar_data is not None,
            'size': len(asset_data),
        }
        return UploadResult(id=asset_id, status='created')

    def create_stack(self, asset_ids):
        self.calls['create_stack'] += 1
        stack_id = new_uuid()
        self.stacks[stack_id] = list(asset_ids)
        return stack_id

    def create_album(self, name, description, asset_ids):
        self.calls['create_album'] += 1
        album_id = new_uuid()
        self.albums[album_id] = AlbumInfo(id=album_id, name=name, asset_ids=list(asset_ids))
        return album_id

    def get_album_info(self, album_id):
        self.calls['get_album_info'] += 1
        album = self.albums[album_id]
        return AlbumInfo(id=album.id, name=album.name, asset_ids=list(album.asset_ids))

    def add_assets_to_album(self, album_id, asset_ids):
        self.calls['add_assets_to_album'] += 1
        album = self.albums[album_id]
        present = set(album.asset_ids)
        results = self._add_members(present, asset_ids)
        album.asset_ids = [a for a in album.asset_ids] + [r.id for r in results if r.success]
        return results

    @staticmethod
    def _add_members(members: set, asset_ids) -> List[BulkIdResult]:
        results = []
        for asset_id in asset_ids:
            if asset_id in members:
                results.append(BulkIdResult(id=asset_id, success=False, error=DUPLICATE_ERROR))
            else:
                members.add(asset_id)
                results.append(BulkIdResult(id=asset_id, success=True))
        return results


@pytest.fixture
def export(tmp_path) -> ExportBuilder:
    """Empty legacy export under a temporary directory."""
    return ExportBuilder(tmp_path)


@pytest.fixture
def server() -> FakeImmichServer:
    return FakeImmichServer()


@pytest.fixture
def mock_client():
    """Mock Immich client; tests set return values as needed."""
    client = Mock()
    client.list_all_tags.return_value = []
    client.check_existing_assets.return_value = []
    client.create_tag.side_effect = lambda name, parent_id=None: new_uuid()
    client.create_stack.side_effect = lambda asset_ids: new_uuid()
    client.tag_assets.side_effect = lambda tag_id, ids: [BulkIdResult(id=i, success=True) for i in ids]
    return client


@pytest.fixture
def record() -> CheckpointRecord:
    return CheckpointRecord()


@pytest.fixture
def remapper(record) -> IdentifierRemapper:
    return IdentifierRemapper(record)


@pytest.fixture
def metrics() -> StepMetrics:
    return StepMetrics(step_name="test", start_time=0.0)


@pytest.fixture
def sample_config(export, tmp_path) -> Dict:
    """Fixture providing a sample configuration dictionary."""
    return {
        'user_to_migrate': 'alice',
        'show_progress': False,
        'source': {
            'db_files_dir': str(export.db_files_dir),
            'dataset_dir': str(export.dataset_dir),
        },
        'immich': {
            'api_base_url': 'http://immich.local:2283/api',
            'timeout': 30,
            'max_retries': 0,
        },
        'users': {
            'alice': {
                'api_key': 'test-api-key',
                'old_user_id': OLD_USER_ID,
            },
        },
        'logging': {
            'level': 'INFO',
            'file': str(tmp_path / 'logs' / 'migration.log'),
        },
    }


@pytest.fixture
def config_file(tmp_path, sample_config) -> Path:
    """Create a temporary config.yaml file."""
    config_path = tmp_path / 'config.yaml'
    with open(config_path, 'w') as f:
        yaml.dump(sample_config, f)
    return config_path


@pytest.fixture
def migration_config(sample_config) -> MigrationConfig:
    return MigrationConfig.from_dict(sample_config)
