"""Immich API client and asset uploader."""

from immich_migration.uploader.immich_client import ImmichClient
from immich_migration.uploader.asset_uploader import AssetUploader

__all__ = ['ImmichClient', 'AssetUploader']
