"""Adapter registry."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from bounce_protocol.providers.base import BaseAdapter
from bounce_protocol.providers.claude_code import ClaudeCodeAdapter
from bounce_protocol.providers.codex import CodexAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Name-keyed store of adapters, owned by one coordinating object."""

    def __init__(self):
        self._adapters: Dict[str, BaseAdapter] = {}
        self._lock = threading.Lock()

    def register(self, adapter: BaseAdapter) -> None:
        """Register an adapter, replacing any existing one with the same name.

        Raises:
            ValueError: If the adapter name is empty.
        """
        if not adapter.name or not adapter.name.strip():
            raise ValueError("Adapter name must not be empty")
        with self._lock:
            if adapter.name in self._adapters:
                logger.info(f"Replacing registered adapter '{adapter.name}'")
            self._adapters[adapter.name] = adapter

    def get(self, name: str) -> Optional[BaseAdapter]:
        with self._lock:
            return self._adapters.get(name)

    def list(self) -> List[BaseAdapter]:
        """All registered adapters in registration order."""
        with self._lock:
            return list(self._adapters.values())

    def discover_available(self) -> List[BaseAdapter]:
        """Check every adapter concurrently and return the available ones.

        A check that raises counts as unavailable and does not affect the
        other checks.
        """
        adapters = self.list()
        if not adapters:
            return []

        with ThreadPoolExecutor(max_workers=len(adapters), thread_name_prefix="adapter-check") as pool:
            futures = [(adapter, pool.submit(adapter.is_available)) for adapter in adapters]
            available = []
            for adapter, future in futures:
                try:
                    if future.result():
                        available.append(adapter)
                except Exception as e:
                    logger.warning(f"Availability check for '{adapter.name}' failed: {e}")

        logger.info(f"Available adapters: {[a.name for a in available]}")
        return available


def create_default_registry() -> AdapterRegistry:
    """Registry preloaded with the built-in process adapters.

    The mock adapter needs a script, so it is registered explicitly by callers.
    """
    registry = AdapterRegistry()
    registry.register(ClaudeCodeAdapter())
    registry.register(CodexAdapter())
    return registry
