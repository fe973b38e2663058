from typing import Optional

from .adapter_base import ProviderAdapter
from .config import Settings
from .kie import KieClient
from .kling import KlingAdapter
from .pipeline.catalog import get_model
from .pipeline.errors import ErrorClassifier
from .pipeline.store import GenerationStore
from .runway import RunwayAdapter
from .sora2 import Sora2Adapter
from .veo import VeoAdapter

ADAPTER_CLASSES = (VeoAdapter, Sora2Adapter, KlingAdapter, RunwayAdapter)


class ProviderFactory:
    """Resolves a model id (or a callback's provider name) to its adapter."""

    def __init__(
        self,
        client: KieClient,
        store: GenerationStore,
        settings: Settings,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self._adapters: dict[str, ProviderAdapter] = {
            cls.name: cls(client, store, settings, classifier) for cls in ADAPTER_CLASSES
        }

    def get_provider(self, model: str) -> ProviderAdapter:
        return self._adapters[get_model(model).provider]

    def by_name(self, name: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(name)

    @property
    def names(self) -> list[str]:
        return sorted(self._adapters)
