from __future__ import annotations

import logging

LOGGER = logging.getLogger("aetherproxy.models")

# Internal / preview identifiers and their nearest stable public equivalent.
PUBLIC_MODEL_MAP = {
    "gemini-3-flash-preview": "gemini-2.5-flash",
    "gemini-3-flash": "gemini-2.5-flash",
    "gemini-3-pro-preview": "gemini-2.5-pro",
    "gemini-3-pro-low": "gemini-2.5-pro",
    "gemini-3-pro-high": "gemini-2.5-pro",
    "gemini-2.0-flash-exp": "gemini-2.5-flash",
}

# Legacy or misspelled identifiers the dashboard may still send.
MODEL_ALIASES = {
    "claude-opus-4.5-thinking": "claude-opus-4-5-thinking",
    "claude-sonnet-4.5-thinking": "claude-sonnet-4-5-thinking",
    "claude-sonnet-4.5": "claude-sonnet-4-5",
    "gemini-1.5-flash": "gemini-2.0-flash",
    "gemini-1.5-flash-001": "gemini-2.0-flash",
    "gemini-1.5-pro": "gemini-2.5-pro",
    "gemini-1.5-pro-001": "gemini-2.5-pro",
}

RESOURCE_PATH_PREFIXES = ("gemini-3",)

CATALOGUE = [
    {
        "id": "gemini-3-pro-preview",
        "displayName": "Gemini 3 Pro Preview",
        "description": "Next-gen pro model (Preview)",
        "inputTokenLimit": 2_000_000,
        "outputTokenLimit": 8192,
    },
    {
        "id": "gemini-3-flash-preview",
        "displayName": "Gemini 3 Flash Preview",
        "description": "Fast next-gen model (Preview)",
        "inputTokenLimit": 1_000_000,
        "outputTokenLimit": 8192,
    },
    {
        "id": "claude-sonnet-4-5",
        "displayName": "Claude Sonnet 4.5",
        "description": "Anthropic Sonnet via Cloud Code",
        "inputTokenLimit": 200_000,
        "outputTokenLimit": 8192,
    },
    {
        "id": "claude-sonnet-4-5-thinking",
        "displayName": "Claude Sonnet 4.5 (Thinking)",
        "description": "Sonnet with extended thinking",
        "inputTokenLimit": 200_000,
        "outputTokenLimit": 8192,
    },
    {
        "id": "claude-opus-4-5-thinking",
        "displayName": "Claude Opus 4.5 (Thinking)",
        "description": "Most capable Claude model",
        "inputTokenLimit": 200_000,
        "outputTokenLimit": 8192,
    },
    {
        "id": "gpt-oss-120b-medium",
        "displayName": "GPT-OSS 120B (Medium)",
        "description": "Open-weight model via Cloud Code",
        "inputTokenLimit": 128_000,
        "outputTokenLimit": 8192,
    },
    {
        "id": "gemini-2.5-pro",
        "displayName": "Gemini 2.5 Pro",
        "description": "Stable Gemini 2.5 Pro",
        "inputTokenLimit": 1_000_000,
        "outputTokenLimit": 8192,
    },
    {
        "id": "gemini-2.0-flash",
        "displayName": "Gemini 2.0 Flash",
        "description": "Fast Gemini 2.0 Flash",
        "inputTokenLimit": 1_000_000,
        "outputTokenLimit": 8192,
    },
]


def normalize_model(model: str) -> str:
    return MODEL_ALIASES.get(model, model)


def to_public_model(model: str) -> str:
    model = normalize_model(model)
    mapped = PUBLIC_MODEL_MAP.get(model)
    if mapped is None:
        LOGGER.debug("No public mapping for model %s; passing through", model)
        return model
    LOGGER.info("Mapping internal model %s to public model %s", model, mapped)
    return mapped


def to_internal_model(model: str, project_id: str, region: str) -> str:
    model = normalize_model(model)
    if not model.startswith(RESOURCE_PATH_PREFIXES):
        return model
    return f"projects/{project_id}/locations/{region}/publishers/google/models/{model}"


def list_models() -> list[dict]:
    return [
        {
            **entry,
            "name": f"models/{entry['id']}",
            "supportsGeneration": True,
        }
        for entry in CATALOGUE
    ]
