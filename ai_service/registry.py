"""
Model registry.

Holds an immutable snapshot of the model descriptors the service may route to.
``refresh()`` builds a new snapshot from a model source and swaps one
reference, so readers always see either the old or the new set in full.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

import structlog

from .adapters.base import ProviderAdapter
from .config import ConfigManager, load_yaml_mapping
from .errors import ConfigError, UnsupportedModel
from .fallback import validate_chains
from .models import ModelDescriptor

logger = structlog.get_logger()


@dataclass(frozen=True)
class RegistrySnapshot:
    """Descriptors ordered by ascending priority (ties keep registration order)."""
    models: tuple[ModelDescriptor, ...] = ()
    by_id: dict[str, ModelDescriptor] = field(default_factory=dict)

    @classmethod
    def build(cls, descriptors: Iterable[ModelDescriptor]) -> "RegistrySnapshot":
        by_id: dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in by_id:
                logger.warning("duplicate_model_descriptor", model=descriptor.id)
                continue
            by_id[descriptor.id] = descriptor
        ordered = tuple(sorted(by_id.values(), key=lambda d: d.priority))
        return cls(models=ordered, by_id=by_id)

    def get(self, model_id: str) -> ModelDescriptor | None:
        return self.by_id.get(model_id)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self.by_id

    def __len__(self) -> int:
        return len(self.models)

    def for_provider(self, provider: str) -> list[ModelDescriptor]:
        return [m for m in self.models if m.provider_name == provider]


class ModelSource(ABC):
    """Read-only source of model registry rows."""

    @abstractmethod
    async def load_rows(self) -> list[dict[str, Any]]:
        """Return the current rows; an empty list means use adapter catalogs."""


class StaticModelSource(ModelSource):
    """In-memory rows, mostly for tests and embedding."""

    def __init__(self, rows: list[dict[str, Any]] | None = None):
        self.rows = list(rows or [])

    async def load_rows(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self.rows]


class YamlModelSource(ModelSource):
    """Rows under the ``models`` key of a YAML file, re-read on every load."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def load_rows(self) -> list[dict[str, Any]]:
        raw = await asyncio.to_thread(load_yaml_mapping, self.path)
        rows = raw.get("models") or []
        if not isinstance(rows, list):
            raise ConfigError(f"'models' in {self.path} must be a list")
        return rows


class ConfigModelSource(ModelSource):
    """Rows from the loaded service configuration."""

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager

    async def load_rows(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self.config_manager.config.models]


def parse_capabilities(value: Any) -> frozenset[str]:
    """Capabilities arrive as a list or as a JSON array string."""
    if value is None:
        return frozenset()
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid capabilities JSON: {e}")
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ConfigError(f"Capabilities must be a list, got {type(value).__name__}")
    return frozenset(str(item) for item in value)


def descriptor_from_row(row: dict[str, Any], adapters: dict[str, ProviderAdapter]) -> ModelDescriptor | None:
    """
    Build a descriptor from one registry row.

    The adapter catalog entry supplies defaults; the row overrides them.
    Returns None for inactive rows and rows no adapter can serve.
    """
    if not row.get("is_active", True):
        return None

    provider = row.get("provider")
    model_id = row.get("model_name") or row.get("id")
    if not provider or not model_id:
        raise ConfigError(f"Model row needs 'provider' and 'model_name': {row}")

    adapter = adapters.get(provider)
    if adapter is None:
        logger.warning("model_row_skipped", model=model_id, provider=provider, reason="no_adapter")
        return None
    try:
        base = adapter.get_model(model_id)
    except UnsupportedModel:
        logger.warning("model_row_skipped", model=model_id, provider=provider, reason="not_in_catalog")
        return None

    try:
        capabilities = base.capabilities
        if row.get("capabilities") is not None:
            capabilities = parse_capabilities(row["capabilities"])
        temperature = row.get("temperature")
        rate_limit = row.get("rate_limit")
        return ModelDescriptor(
            id=base.id,
            provider_name=provider,
            max_tokens=int(row.get("max_tokens") or base.max_tokens),
            context_window=int(row.get("context_window") or base.context_window),
            capabilities=capabilities,
            temperature_supported=base.temperature_supported,
            fallback_model_id=row.get("fallback_model", base.fallback_model_id),
            priority=int(row.get("priority", base.priority)),
            default_temperature=float(temperature) if temperature is not None else None,
            requests_per_minute=int(rate_limit) if rate_limit is not None else None,
            display_name=row.get("display_name") or base.display_name,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid model row for {model_id}: {e}")


class ModelRegistry:
    """
    Process-wide registry of routable models.

    Readers take ``registry.snapshot`` once and use it; ``refresh()`` replaces
    the reference wholesale and never mutates a published snapshot.
    """

    def __init__(
        self,
        adapters: dict[str, ProviderAdapter],
        source: ModelSource | None = None,
    ):
        self.adapters = adapters
        self.source = source
        self._snapshot = RegistrySnapshot.build(self._catalog_descriptors())
        self._refresh_task: asyncio.Task | None = None
        self._listeners: list[Callable[[RegistrySnapshot], None]] = []

    def add_listener(self, callback: Callable[[RegistrySnapshot], None]) -> None:
        """Call ``callback(snapshot)`` after every successful refresh."""
        self._listeners.append(callback)

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def get(self, model_id: str) -> ModelDescriptor | None:
        return self._snapshot.get(model_id)

    def adapter_for(self, descriptor: ModelDescriptor) -> ProviderAdapter:
        try:
            return self.adapters[descriptor.provider_name]
        except KeyError:
            raise UnsupportedModel(
                f"No adapter registered for provider {descriptor.provider_name}",
                provider=descriptor.provider_name,
                model_id=descriptor.id,
            )

    def _catalog_descriptors(self) -> list[ModelDescriptor]:
        descriptors = []
        for adapter in self.adapters.values():
            descriptors.extend(adapter.list_models())
        return descriptors

    async def refresh(self) -> RegistrySnapshot:
        """
        Rebuild the snapshot from the source and swap it in.

        Raises:
            ConfigError: If the source rows are malformed (previous snapshot kept)
        """
        rows = await self.source.load_rows() if self.source else []
        if rows:
            descriptors = [
                descriptor for descriptor in (descriptor_from_row(row, self.adapters) for row in rows)
                if descriptor is not None
            ]
        else:
            descriptors = self._catalog_descriptors()

        snapshot = RegistrySnapshot.build(descriptors)
        for issue in validate_chains(snapshot):
            logger.warning("fallback_chain_issue", issue=issue)

        self._snapshot = snapshot
        logger.info("model_registry_refreshed", models=len(snapshot), from_rows=bool(rows))
        for callback in self._listeners:
            callback(snapshot)
        return snapshot

    def start_auto_refresh(self, interval_s: float) -> asyncio.Task:
        """Refresh every ``interval_s`` seconds until stopped."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_forever(interval_s))
        return self._refresh_task

    async def _refresh_forever(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.refresh()
            except Exception as e:
                logger.error("model_registry_refresh_failed", error=str(e), models=len(self._snapshot))

    async def stop_auto_refresh(self) -> None:
        if self._refresh_task is None:
            return
        self._refresh_task.cancel()
        try:
            await self._refresh_task
        except asyncio.CancelledError:
            pass
        self._refresh_task = None
