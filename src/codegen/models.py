"""Per-request assembly of upstream backends.

``BackendSelector.resolve`` turns the request's model identifier and model
configuration into a ``BackendHandle``. Resolution only reads configuration
and the process environment; network errors surface later, from the stream.
"""

import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List

import httpx

from .config import ProviderDef
from .errors import ClientConfigError
from .providers import BACKEND_FACTORIES, BaseBackend
from .types import LLMModel, LLMModelConfig


@dataclass(frozen=True)
class BackendHandle:
    provider_id: str
    model_id: str
    base_url: str
    params: dict[str, Any]
    backend: BaseBackend = field(repr=False)
    credential_source: str = "none"

    def stream(
        self,
        *,
        system: str,
        messages: List[dict[str, Any]],
        schema: dict[str, Any],
    ) -> AsyncIterator[str]:
        return self.backend.stream_object(system=system, messages=messages, schema=schema)


class BackendSelector:
    def __init__(
        self,
        providers: Dict[str, ProviderDef],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.providers = dict(providers)
        self._transport = transport

    def _provider(self, provider_id: str) -> ProviderDef:
        defn = self.providers.get(provider_id)
        if defn is None:
            available = ", ".join(sorted(self.providers)) or "<none>"
            raise ClientConfigError(
                f"Unsupported provider '{provider_id}'. Available providers: {available}"
            )
        if defn.type not in BACKEND_FACTORIES:
            raise ClientConfigError(
                f"Unknown provider type '{defn.type}' for provider '{provider_id}'"
            )
        return defn

    @staticmethod
    def _credential(defn: ProviderDef, config: LLMModelConfig) -> tuple[str | None, str]:
        if config.has_api_key():
            return (config.api_key or "").strip(), "caller"
        if not defn.auth_env:
            return None, "none"
        raw = os.environ.get(defn.auth_env, "").strip()
        if raw:
            return raw, "environment"
        raise ClientConfigError(
            f"No API key configured for provider '{defn.name}'. "
            f"Set {defn.auth_env} or provide an API key in the model configuration."
        )

    def resolve(self, model: LLMModel, config: LLMModelConfig) -> BackendHandle:
        provider_id = (model.provider_id or "").strip()
        if not provider_id:
            raise ClientConfigError("Model is missing a provider identifier")
        defn = self._provider(provider_id)
        model_id = (model.id or config.model or "").strip()
        if not model_id:
            raise ClientConfigError(f"No model id given for provider '{provider_id}'")
        base_url = (config.base_url or defn.base_url or "").strip()
        if not base_url:
            raise ClientConfigError(f"No endpoint configured for provider '{provider_id}'")
        api_key, credential_source = self._credential(defn, config)
        params = config.generation_params()
        factory = BACKEND_FACTORIES[defn.type]
        backend = factory(
            defn,
            model=model_id,
            base_url=base_url,
            api_key=api_key,
            params=params,
            transport=self._transport,
        )
        return BackendHandle(
            provider_id=provider_id,
            model_id=model_id,
            base_url=base_url,
            params=params,
            backend=backend,
            credential_source=credential_source,
        )
