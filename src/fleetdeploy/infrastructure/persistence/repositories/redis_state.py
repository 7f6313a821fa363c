"""Redis state repository."""

from __future__ import annotations

import redis.asyncio
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from fleetdeploy.domain.errors import StatePersistenceError
from fleetdeploy.domain.models.deployment_state import StateDocument
from fleetdeploy.domain.ports.repositories import StateRepository


logger = structlog.get_logger(__name__)


class RedisStateRepository(StateRepository):
    """Stores the state document under a single Redis key.

    Lets several operators share state for one fleet; a ``SET`` replaces the
    whole document atomically.
    """

    def __init__(self, client: redis.asyncio.Redis, key: str = "fleetdeploy:state") -> None:
        self._client = client
        self._key = key

    @property
    def location(self) -> str:
        return f"redis:{self._key}"

    async def exists(self) -> bool:
        try:
            return bool(await self._client.exists(self._key))
        except RedisError as e:
            raise StatePersistenceError(f"Cannot reach state store: {e}") from e

    async def load(self) -> StateDocument | None:
        try:
            raw = await self._client.get(self._key)
        except RedisError as e:
            raise StatePersistenceError(f"Cannot read state from {self.location}: {e}") from e
        if raw is None:
            return None
        try:
            return StateDocument.model_validate_json(raw)
        except ValidationError as e:
            raise StatePersistenceError(f"State at {self.location} is corrupt: {e}") from e

    async def save(self, document: StateDocument) -> None:
        try:
            await self._client.set(self._key, document.model_dump_json())
        except RedisError as e:
            raise StatePersistenceError(f"Cannot write state to {self.location}: {e}") from e
        logger.debug("state_saved", location=self.location)
