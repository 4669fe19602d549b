import threading
from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, Tuple

from unillm.core.errors import UnknownCredentialPoolError, UnknownModelError
from unillm.core.models_config import ModelsConfig, ProviderSpec


@dataclass(frozen=True)
class ModelEntry:
    # model name sent upstream
    name: str
    pool_id: str


@dataclass(frozen=True)
class SelectedCredential:
    secret: str
    provider: ProviderSpec
    needs_proxy: bool


class CredentialPool:
    """Equivalent secrets for one upstream account, handed out round-robin."""

    def __init__(self, keys: Sequence[str], provider: ProviderSpec, needs_proxy: bool = False):
        if not keys:
            raise ValueError("a credential pool needs at least one key")
        self._keys: Tuple[str, ...] = tuple(keys)
        self.provider = provider
        self.needs_proxy = needs_proxy
        self._cursor = 0

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def cursor(self) -> int:
        return self._cursor

    def rotate(self) -> SelectedCredential:
        # caller holds the registry lock for the whole read-modify-write
        index = self._cursor % len(self._keys)
        self._cursor += 1
        return SelectedCredential(self._keys[index], self.provider, self.needs_proxy)


@dataclass(frozen=True)
class Selection:
    model_id: str
    model_name: str
    credential: SelectedCredential


class ProviderRegistry:
    """Models and credential pools shared by every request.

    Built once at startup; afterwards only pool cursors move. Lookups and
    rotation are serialised by one exclusive lock rather than a
    readers/writer pair: every ``select`` rotates, so nearly all access is a
    write, and the read-only ``model_ids`` holds it only for a sort. Two
    concurrent requests never draw the same index from a pool.
    """

    def __init__(self, models: Mapping[str, ModelEntry], pools: Mapping[str, CredentialPool]):
        self._models: Dict[str, ModelEntry] = dict(models)
        self._pools: Dict[str, CredentialPool] = dict(pools)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ModelsConfig) -> "ProviderRegistry":
        pools = {
            pool_id: CredentialPool(info.api_key, info.provider, info.need_proxy)
            for pool_id, info in config.api_keys.items()
        }
        models = {
            model_id: ModelEntry(info.name, info.api_key_id)
            for model_id, info in config.models.items()
        }
        return cls(models, pools)

    def model_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._models)

    def select(self, model_id: str) -> Selection:
        """Resolve a model id and rotate its pool once."""
        with self._lock:
            entry = self._models.get(model_id)
            if entry is None:
                raise UnknownModelError(model_id)
            pool = self._pools.get(entry.pool_id)
            if pool is None:
                raise UnknownCredentialPoolError(entry.pool_id)
            credential = pool.rotate()
        return Selection(model_id, entry.name, credential)
