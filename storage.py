#!/usr/bin/env python3
"""
Durable JSON blob storage for generated reports and batch run summaries.

Reports are written as ``{report_id}.json`` in the reports container and run
summaries as timestamped blobs in the summaries container. Azure Blob Storage
is used when an account and key are configured; otherwise blobs live on the
local filesystem under ``BLOB_STORE_PATH/<container>/``.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from azure_storage import BlobClient
from config import config, get_logger

logger = get_logger("storage")


def _dumps(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")


class ReportStore:
    """Interface shared by the local and Azure stores."""

    containers = ()

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def put_json(self, container: str, name: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def get_json(self, container: str, name: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def list_blobs(self, container: str, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return ``[{"name": str, "last_modified": datetime}]`` newest first."""
        raise NotImplementedError


class LocalReportStore(ReportStore):
    """Filesystem-backed store, used for development and tests."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or config.BLOB_STORE_PATH)

    def _path(self, container: str, name: str) -> Path:
        if "/" in name or "\\" in name or name in ("", ".", ".."):
            raise ValueError(f"Invalid blob name '{name}'")
        return self.root / container / name

    async def initialize(self) -> None:
        for container in (config.REPORTS_CONTAINER, config.SUMMARIES_CONTAINER):
            (self.root / container).mkdir(parents=True, exist_ok=True)
        logger.info(f"Local report store ready at {self.root}")

    async def put_json(self, container: str, name: str, payload: Dict[str, Any]) -> None:
        target = self._path(container, name)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_bytes(_dumps(payload))
        os.replace(tmp, target)

    async def get_json(self, container: str, name: str) -> Optional[Dict[str, Any]]:
        target = self._path(container, name)
        if not target.is_file():
            return None
        return json.loads(target.read_text(encoding="utf-8"))

    async def list_blobs(self, container: str, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        folder = self.root / container
        if not folder.is_dir():
            return []
        blobs = []
        for entry in folder.iterdir():
            if not entry.is_file() or entry.name.endswith(".tmp"):
                continue
            if prefix and not entry.name.startswith(prefix):
                continue
            blobs.append({
                "name": entry.name,
                "last_modified": datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc),
            })
        blobs.sort(key=lambda b: (b["last_modified"], b["name"]), reverse=True)
        return blobs


class AzureReportStore(ReportStore):
    """Azure Blob Storage-backed store."""

    def __init__(self, storage_account: Optional[str] = None, storage_key: Optional[str] = None):
        self.storage_account = storage_account or config.AZURE_STORAGE_ACCOUNT
        self.storage_key = storage_key or config.AZURE_STORAGE_KEY
        self.blob_client: Optional[BlobClient] = None

    async def initialize(self) -> None:
        self.blob_client = BlobClient(account=self.storage_account, auth=self.storage_key)
        for container in (config.REPORTS_CONTAINER, config.SUMMARIES_CONTAINER):
            res = await self.blob_client.create_container(container)
            if res.status not in (201, 409):
                logger.warning(f"Could not create container '{container}': HTTP {res.status}")
        logger.info(f"Azure report store initialized for account '{self.storage_account}'")

    async def close(self) -> None:
        if self.blob_client:
            await self.blob_client.close()
            self.blob_client = None

    def _client(self) -> BlobClient:
        if self.blob_client is None:
            raise RuntimeError("Azure report store used before initialize()")
        return self.blob_client

    async def put_json(self, container: str, name: str, payload: Dict[str, Any]) -> None:
        res = await self._client().put_blob(container, name, _dumps(payload), mimetype="application/json")
        if res.status not in (200, 201):
            body = await res.text()
            logger.error(f"Upload of {container}/{name} failed: HTTP {res.status} {body[:200]}")
            res.raise_for_status()

    async def get_json(self, container: str, name: str) -> Optional[Dict[str, Any]]:
        res = await self._client().get_blob(container, name)
        if res.status == 404:
            return None
        res.raise_for_status()
        return json.loads(await res.text())

    async def list_blobs(self, container: str, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        blobs = []
        async for item in self._client().list_blobs(container, prefix=prefix):
            blobs.append({
                "name": item["name"],
                "last_modified": item.get("last-modified") or datetime.fromtimestamp(0, tz=timezone.utc),
            })
        blobs.sort(key=lambda b: (b["last_modified"], b["name"]), reverse=True)
        return blobs


def create_store() -> ReportStore:
    """Pick the Azure store when credentials are configured, else the local one."""
    if config.has_azure_storage():
        return AzureReportStore()
    logger.info("Azure storage not configured - using local blob directory")
    return LocalReportStore()
