"""Resolve the effective backend triple for a selected model."""

from __future__ import annotations

from .config import BackendConfig, Config, ModelOverride
from .models import ResolvedBackend


def find_override(backend: BackendConfig, model: str) -> ModelOverride | None:
    """Return the per-model entry whose name matches ``model`` exactly."""
    wanted = model.strip()
    for entry in backend.models:
        if entry.name == wanted:
            return entry
    return None


def resolve_backend(config: Config | BackendConfig, model: str) -> ResolvedBackend:
    """Return (provider, base_url, api_key) for ``model``.

    Fields set on a matching per-model override shadow the global defaults
    one by one; absent fields fall back. Pure and infallible.
    """
    backend = config.backend if isinstance(config, Config) else config
    override = find_override(backend, model)
    if override is None:
        return ResolvedBackend(
            provider=backend.provider,
            base_url=backend.base_url,
            api_key=backend.api_key,
        )
    return ResolvedBackend(
        provider=override.provider or backend.provider,
        base_url=override.base_url or backend.base_url,
        api_key=override.api_key or backend.api_key,
    )
