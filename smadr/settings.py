"""Persisted API settings: selected provider, model and per-provider keys."""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Any

from pydantic import BaseModel, ValidationError

from . import config
from .providers import Provider, ProviderConfig

logger = logging.getLogger(__name__)


class ProviderKeys(BaseModel):
    google: str = ""
    groq: str = ""
    openrouter: str = ""


class ApiSettings(BaseModel):
    provider: Provider = Provider.GOOGLE
    model: str = ""
    keys: ProviderKeys = ProviderKeys()

    def provider_config(self) -> ProviderConfig:
        """Snapshot the selected provider's model and key for one request."""
        return ProviderConfig(
            provider=self.provider,
            model=self.model,
            api_key=getattr(self.keys, self.provider.value),
        )

    def masked(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["keys"] = {name: _mask(value) for name, value in data["keys"].items()}
        return data


def _mask(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"


def default_settings() -> ApiSettings:
    try:
        provider = Provider(config.DEFAULT_PROVIDER)
    except ValueError:
        logger.warning("Unknown SMADR_PROVIDER %r, using google", config.DEFAULT_PROVIDER)
        provider = Provider.GOOGLE
    return ApiSettings(
        provider=provider,
        model=config.DEFAULT_MODEL_NAME,
        keys=ProviderKeys(
            google=config.GOOGLE_API_KEY,
            groq=config.GROQ_API_KEY,
            openrouter=config.OPENROUTER_API_KEY,
        ),
    )


def load_settings() -> ApiSettings:
    """Environment defaults overridden by whatever was saved."""
    defaults = default_settings()
    if not os.path.exists(config.SETTINGS_PATH):
        return defaults

    with open(config.SETTINGS_PATH, 'r') as f:
        saved = json.load(f)

    merged = defaults.model_dump(mode="json")
    for key, value in saved.items():
        if key == "keys" and isinstance(value, dict):
            merged["keys"].update({k: v for k, v in value.items() if v})
        else:
            merged[key] = value

    try:
        return ApiSettings(**merged)
    except ValidationError as e:
        logger.warning("Ignoring invalid saved settings: %s", e)
        return defaults


def save_settings(settings: ApiSettings):
    Path(config.SETTINGS_PATH).parent.mkdir(parents=True, exist_ok=True)
    with open(config.SETTINGS_PATH, 'w') as f:
        json.dump(settings.model_dump(mode="json"), f, indent=2)
