"""
Thin client for the parts of the Immich HTTP API used by the migration.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter

from immich_migration.exceptions import ImmichApiError
from immich_migration.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

# Error code returned per id by bulk endpoints when the id is already present
DUPLICATE_ERROR = "duplicate"


@dataclass
class RemoteTag:
    id: str
    name: str
    value: Optional[str] = None
    parent_id: Optional[str] = None


@dataclass
class UploadResult:
    id: str
    status: str

    @property
    def is_duplicate(self) -> bool:
        return self.status == DUPLICATE_ERROR


@dataclass
class BulkIdResult:
    """Per-id outcome of a bulk add call."""
    id: str
    success: bool
    error: Optional[str] = None


@dataclass
class AlbumInfo:
    id: str
    name: str
    asset_ids: List[str] = field(default_factory=list)


class ImmichClient:
    """
    Blocking Immich API client.

    Read-only calls are retried on connection errors and timeouts. Calls that
    create or modify server state are issued exactly once; their failures are
    left to the caller, which decides whether the item is retryable.
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = 300.0,
                 max_retries: int = 3, session: Optional[requests.Session] = None):
        """
        Initialize the Immich client.

        Args:
            base_url: Server URL, with or without the trailing ``/api``
            api_key: API key of the user being migrated
            timeout: Per-request timeout in seconds
            max_retries: Retries for read-only calls
            session: Optional pre-built session (tests)
        """
        base_url = base_url.rstrip('/')
        if base_url.endswith('/api'):
            base_url = base_url[:-len('/api')]
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or self._create_session()
        self.session.headers.update({
            'x-api-key': api_key,
            'Accept': 'application/json',
        })

        retry = retry_with_backoff(
            max_retries=max_retries,
            describe=lambda method, path, **kwargs: f"{method} {path}",
        )
        self._read = retry(self._request)

    @staticmethod
    def _create_session() -> requests.Session:
        """Create HTTP session with connection pooling."""
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=1)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs):
        response = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        if not response.ok:
            raise ImmichApiError(
                f"{method} {path} failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        if not response.content:
            return None
        return response.json()

    # Tags
    def list_all_tags(self) -> List[RemoteTag]:
        data = self._read('GET', 'tags') or []
        return [
            RemoteTag(id=t['id'], name=t['name'], value=t.get('value'), parent_id=t.get('parentId'))
            for t in data
        ]

    def create_tag(self, name: str, parent_id: Optional[str] = None) -> Optional[str]:
        data = self._request('POST', 'tags', json={'name': name, 'parentId': parent_id})
        return (data or {}).get('id')

    def tag_assets(self, tag_id: str, asset_ids: List[str]) -> List[BulkIdResult]:
        data = self._request('PUT', f'tags/{tag_id}/assets', json={'ids': asset_ids})
        return self._bulk_results(data)

    # Assets
    def check_existing_assets(self, device_asset_ids: List[str], device_id: str) -> List[str]:
        data = self._read(
            'POST', 'assets/exist',
            json={'deviceAssetIds': device_asset_ids, 'deviceId': device_id},
        )
        return list((data or {}).get('existingIds') or [])

    def upload_asset(self, asset_data: bytes, filename: str, device_asset_id: str, device_id: str,
                     file_created_at: str, file_modified_at: str,
                     sidecar_data: Optional[bytes] = None,
                     live_photo_video_id: Optional[str] = None) -> UploadResult:
        """Upload one asset (and its XMP sidecar) as a multipart request."""
        form: Dict[str, str] = {
            'deviceAssetId': device_asset_id,
            'deviceId': device_id,
            'fileCreatedAt': file_created_at,
            'fileModifiedAt': file_modified_at,
            'filename': filename,
            'metadata': json.dumps([]),
        }
        if live_photo_video_id:
            form['livePhotoVideoId'] = live_photo_video_id

        files = {'assetData': (filename, asset_data, 'application/octet-stream')}
        if sidecar_data is not None:
            files['sidecarData'] = (f"{filename}.xmp", sidecar_data, 'application/xml')

        data = self._request('POST', 'assets', data=form, files=files) or {}
        return UploadResult(id=data.get('id', ''), status=data.get('status', ''))

    # Stacks
    def create_stack(self, asset_ids: List[str]) -> Optional[str]:
        data = self._request('POST', 'stacks', json={'assetIds': asset_ids})
        return (data or {}).get('id')

    # Albums
    def create_album(self, name: str, description: Optional[str], asset_ids: List[str]) -> Optional[str]:
        payload = {'albumName': name, 'assetIds': asset_ids}
        if description:
            payload['description'] = description
        data = self._request('POST', 'albums', json=payload)
        return (data or {}).get('id')

    def get_album_info(self, album_id: str) -> AlbumInfo:
        data = self._read('GET', f'albums/{album_id}') or {}
        return AlbumInfo(
            id=data.get('id', album_id),
            name=data.get('albumName', ''),
            asset_ids=[a['id'] for a in data.get('assets') or []],
        )

    def add_assets_to_album(self, album_id: str, asset_ids: List[str]) -> List[BulkIdResult]:
        data = self._request('PUT', f'albums/{album_id}/assets', json={'ids': asset_ids})
        return self._bulk_results(data)

    @staticmethod
    def _bulk_results(data) -> List[BulkIdResult]:
        return [
            BulkIdResult(id=r.get('id', ''), success=bool(r.get('success')), error=r.get('error'))
            for r in data or []
        ]
