"""
Local draft caches.

The local cache is written before the server and read on resume. It is best
effort: a cache that cannot be read is treated as empty.
"""

import hashlib
import json
from pathlib import Path
from typing import Protocol

import aiofiles
import aiofiles.os
from pydantic import ValidationError as PydanticValidationError

from ...models import DraftSnapshot
from ...utils.logger import logger


class DraftCache(Protocol):
    """Per-device store of the latest local snapshot for each session."""

    async def load(self, session_id: str) -> DraftSnapshot | None: ...

    async def store(self, snapshot: DraftSnapshot) -> None: ...

    async def remove(self, session_id: str) -> None: ...


class InMemoryDraftCache:
    """Draft cache kept in process memory."""

    def __init__(self) -> None:
        self._snapshots: dict[str, DraftSnapshot] = {}

    async def load(self, session_id: str) -> DraftSnapshot | None:
        return self._snapshots.get(session_id)

    async def store(self, snapshot: DraftSnapshot) -> None:
        self._snapshots[snapshot.session_id] = snapshot.model_copy(deep=True)

    async def remove(self, session_id: str) -> None:
        self._snapshots.pop(session_id, None)


class FileDraftCache:
    """Draft cache storing one JSON file per session.

    Args:
        directory: Directory holding one ``<sha256 of session_id>.json`` file
            per session, so any session id maps to a distinct file name
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def _path(self, session_id: str) -> Path:
        digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}.json"

    async def load(self, session_id: str) -> DraftSnapshot | None:
        path = self._path(session_id)
        if not await aiofiles.os.path.exists(path):
            return None
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
            snapshot = DraftSnapshot.model_validate(json.loads(content))
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning(f"Ignoring unreadable local draft {path.name}: {e}")
            return None
        if snapshot.session_id != session_id:
            logger.warning(f"Ignoring local draft {path.name} written for another session")
            return None
        return snapshot

    async def store(self, snapshot: DraftSnapshot) -> None:
        await aiofiles.os.makedirs(self.directory, exist_ok=True)
        path = self._path(snapshot.session_id)
        tmp_path = path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(snapshot.model_dump_json())
        await aiofiles.os.replace(tmp_path, path)

    async def remove(self, session_id: str) -> None:
        path = self._path(session_id)
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)
