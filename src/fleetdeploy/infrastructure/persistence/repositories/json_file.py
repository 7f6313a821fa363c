"""JSON file state repository."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile

import structlog
from pydantic import ValidationError

from fleetdeploy.domain.errors import StatePersistenceError
from fleetdeploy.domain.models.deployment_state import StateDocument
from fleetdeploy.domain.ports.repositories import StateRepository


logger = structlog.get_logger(__name__)


class JsonFileStateRepository(StateRepository):
    """Stores the state document as one JSON file.

    Writes go to a temporary file in the same directory which is then renamed
    over the target, so a crash mid-write leaves the previous document intact.
    """

    def __init__(self, path: str) -> None:
        self._path = path

    @property
    def location(self) -> str:
        return self._path

    async def exists(self) -> bool:
        return await asyncio.to_thread(os.path.exists, self._path)

    async def load(self) -> StateDocument | None:
        return await asyncio.to_thread(self._read)

    async def save(self, document: StateDocument) -> None:
        payload = document.model_dump_json(indent=2)
        await asyncio.to_thread(self._write, payload)

    def _read(self) -> StateDocument | None:
        try:
            with open(self._path, encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StatePersistenceError(f"Cannot read state file {self._path}: {e}") from e

        if not raw.strip():
            return None
        try:
            return StateDocument.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise StatePersistenceError(f"State file {self._path} is corrupt: {e}") from e

    def _write(self, payload: str) -> None:
        directory = os.path.dirname(os.path.abspath(self._path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self._path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StatePersistenceError(f"Cannot write state file {self._path}: {e}") from e
        logger.debug("state_saved", path=self._path, bytes=len(payload))
