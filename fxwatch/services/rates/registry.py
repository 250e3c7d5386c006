"""Name -> runtime factory map.

Factories are registered up front; ``get`` memoizes one runtime per name so its
cache is shared by every caller, while ``create`` always builds a fresh one.
"""
import logging
from typing import Callable, Dict, List, Optional

from .runtime import ProviderRuntime

logger = logging.getLogger(__name__)

RuntimeFactory = Callable[[], ProviderRuntime]


class ProviderRegistry:
    def __init__(self) -> None:
        self._factories: Dict[str, RuntimeFactory] = {}
        self._instances: Dict[str, ProviderRuntime] = {}

    def register(self, name: str, factory: RuntimeFactory) -> None:
        if name in self._factories:
            logger.info("replacing provider factory", extra={"provider": name})
        self._factories[name] = factory
        # A stale memoized runtime would keep serving the old factory's source
        self._instances.pop(name, None)

    def create(self, name: str) -> Optional[ProviderRuntime]:
        factory = self._factories.get(name)
        return factory() if factory is not None else None

    def get(self, name: str) -> Optional[ProviderRuntime]:
        runtime = self._instances.get(name)
        if runtime is None:
            runtime = self.create(name)
            if runtime is not None:
                self._instances[name] = runtime
        return runtime

    def list_registered(self) -> List[str]:
        return sorted(self._factories)

    def is_registered(self, name: str) -> bool:
        return name in self._factories
