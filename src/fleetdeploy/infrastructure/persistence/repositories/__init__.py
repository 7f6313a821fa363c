"""Repository implementations."""

from fleetdeploy.infrastructure.persistence.repositories.in_memory import (
    InMemoryStateRepository,
)
from fleetdeploy.infrastructure.persistence.repositories.json_file import (
    JsonFileStateRepository,
)
from fleetdeploy.infrastructure.persistence.repositories.redis_state import (
    RedisStateRepository,
)


__all__ = [
    "InMemoryStateRepository",
    "JsonFileStateRepository",
    "RedisStateRepository",
]
