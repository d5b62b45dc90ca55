"""
AvatarChat — Persistence Collaborators

User-scoped record CRUD, blob upload and row-update subscriptions.

  • SupabaseStore — supabase-py client (sync, run in the default executor).
                    Row subscriptions poll the row at `watch_interval`.
  • InMemoryStore — process-local fallback with push subscriptions.
                    Used when Supabase is not configured and in tests.

Both implement the RecordStore and BlobStore protocols.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from ..core.callbacks import invoke
from ..core.config import SupabaseConfig, supabase_cfg
from ..core.errors import CollaboratorError
from ..core.interfaces import RowCallback

logger = logging.getLogger("avatarchat.store")


# ═══════════════════════════════════════════════════════════════════════════
# Supabase
# ═══════════════════════════════════════════════════════════════════════════

class SupabaseStore:

    def __init__(self, cfg: SupabaseConfig = supabase_cfg, client: Optional[Any] = None) -> None:
        self.cfg = cfg
        if client is None:
            from supabase import create_client

            cfg.require()
            client = create_client(cfg.url, cfg.service_key)
        self._client = client
        self._watchers: Dict[str, List[asyncio.Task]] = {}

    async def _run(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except Exception as e:
            logger.error(f"Supabase call failed: {e}")
            raise CollaboratorError("supabase", str(e)) from e

    def _table(self):
        return self._client.table(self.cfg.sessions_table)

    # ── RecordStore ─────────────────────────────────────────────────────

    async def insert(self, user_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        row = {**record, "user_id": user_id}
        res = await self._run(lambda: self._table().insert(row).execute())
        if not res.data:
            raise CollaboratorError("supabase", "Insert returned no row")
        return res.data[0]

    async def update(self, user_id: str, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        res = await self._run(
            lambda: self._table().update(fields).eq("id", record_id).eq("user_id", user_id).execute()
        )
        if not res.data:
            raise KeyError(f"Record {record_id} not found")
        return res.data[0]

    async def select(self, user_id: str, record_id: str) -> Optional[Dict[str, Any]]:
        res = await self._run(
            lambda: self._table().select("*").eq("id", record_id).eq("user_id", user_id).limit(1).execute()
        )
        return res.data[0] if res.data else None

    def subscribe(self, record_id: str, callback: RowCallback) -> Callable[[], None]:
        task = asyncio.get_running_loop().create_task(
            self._watch(record_id, callback), name=f"watch-{record_id}",
        )
        self._watchers.setdefault(record_id, []).append(task)

        def unsubscribe() -> None:
            task.cancel()
            tasks = self._watchers.get(record_id, [])
            if task in tasks:
                tasks.remove(task)
            if not tasks:
                self._watchers.pop(record_id, None)

        return unsubscribe

    async def _watch(self, record_id: str, callback: RowCallback) -> None:
        """Poll one row; report the first snapshot, then every change."""
        last: Optional[Dict[str, Any]] = None
        while True:
            try:
                res = await self._run(
                    lambda: self._table().select("*").eq("id", record_id).limit(1).execute()
                )
                row = res.data[0] if res.data else None
                if row is not None and row != last:
                    invoke(callback, row)
                    last = row
            except CollaboratorError as e:
                logger.warning(f"Watch on {record_id} failed, retrying: {e}")
            await asyncio.sleep(self.cfg.watch_interval)

    # ── BlobStore ───────────────────────────────────────────────────────

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        bucket = self._client.storage.from_(self.cfg.videos_bucket)
        await self._run(partial(bucket.upload, path, data, {"content-type": content_type}))
        url = bucket.get_public_url(path)
        logger.info(f"Uploaded {len(data)} bytes to {self.cfg.videos_bucket}/{path}")
        return url


# ═══════════════════════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryStore:
    """Process-local store. Updates push to subscribers immediately."""

    def __init__(self, bucket: str = "training_videos") -> None:
        self._bucket = bucket
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._blobs: Dict[str, bytes] = {}
        self._subscribers: Dict[str, List[RowCallback]] = {}

    async def insert(self, user_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        row = {
            "id": uuid.uuid4().hex,
            "created_at": time.time(),
            **record,
            "user_id": user_id,
        }
        self._rows[row["id"]] = row
        return copy.deepcopy(row)

    async def update(self, user_id: str, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        row = self._rows.get(record_id)
        if row is None or row.get("user_id") != user_id:
            raise KeyError(f"Record {record_id} not found")
        row.update({k: v for k, v in fields.items() if k not in ("id", "user_id")})
        snapshot = copy.deepcopy(row)
        for callback in list(self._subscribers.get(record_id, [])):
            invoke(callback, copy.deepcopy(snapshot))
        return snapshot

    async def select(self, user_id: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._rows.get(record_id)
        if row is None or row.get("user_id") != user_id:
            return None
        return copy.deepcopy(row)

    def subscribe(self, record_id: str, callback: RowCallback) -> Callable[[], None]:
        self._subscribers.setdefault(record_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(record_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        self._blobs[path] = bytes(data)
        return f"memory://{self._bucket}/{path}"

    def blob(self, path: str) -> Optional[bytes]:
        return self._blobs.get(path)
