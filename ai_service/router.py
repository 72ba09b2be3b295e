"""
Capability-based model selection.
"""

import structlog

from .errors import CapabilityNotFound, UnsupportedModel
from .models import ModelDescriptor
from .registry import ModelRegistry

logger = structlog.get_logger()


class CapabilityRouter:
    """
    Selects a model for a capability.

    Order of preference:
    1. The subject's preferred model, if registered and it declares the capability
    2. The first registered model by ascending priority that declares it

    Selection reads one registry snapshot, so it is idempotent between refreshes.
    """

    def __init__(self, registry: ModelRegistry, default_model_id: str | None = None):
        """
        Initialize the router.

        Args:
            registry: Model registry to select from
            default_model_id: Model used when a request names no capability
        """
        self.registry = registry
        self.default_model_id = default_model_id

    def select_model(self, capability: str, subject_preference: str | None = None) -> ModelDescriptor:
        """
        Pick the model for a capability.

        Raises:
            CapabilityNotFound: If no registered model declares the capability
        """
        snapshot = self.registry.snapshot

        if subject_preference:
            preferred = snapshot.get(subject_preference)
            if preferred is not None and preferred.supports(capability):
                return preferred
            logger.debug(
                "preference_not_applicable",
                model=subject_preference,
                capability=capability,
                registered=preferred is not None,
            )

        for descriptor in snapshot.models:
            if descriptor.supports(capability):
                return descriptor

        raise CapabilityNotFound(f"No model supports capability '{capability}'")

    def models_for(self, capability: str) -> list[ModelDescriptor]:
        """Every model declaring the capability, in routing order."""
        return [d for d in self.registry.snapshot.models if d.supports(capability)]

    def default_model(self) -> ModelDescriptor:
        """
        The configured default model.

        When it is missing from the registry, logs ``default_model_missing``
        and returns the first model by priority.

        Raises:
            UnsupportedModel: If the registry is empty
        """
        snapshot = self.registry.snapshot
        if self.default_model_id:
            descriptor = snapshot.get(self.default_model_id)
            if descriptor is not None:
                return descriptor

        if not snapshot.models:
            raise UnsupportedModel("No models are registered", model_id=self.default_model_id)

        substitute = snapshot.models[0]
        logger.warning(
            "default_model_missing",
            model=self.default_model_id,
            substitute=substitute.id,
        )
        return substitute
