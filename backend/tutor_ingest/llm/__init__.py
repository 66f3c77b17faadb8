"""
LLM Access Package

Every call to the external generative-model provider goes through a
process-wide KeyPool, which spreads requests across the configured API keys
and isolates keys that are rate limited or invalid.

Public API::

    from tutor_ingest.llm import KeyPool, ModelClient

    pool   = KeyPool(settings.llm_api_key_list)
    client = ModelClient.from_settings(pool, settings)

    text    = await client.generate_json(prompt)
    vectors = await client.embed(["chunk one", "chunk two"])
"""

from tutor_ingest.llm.client import ModelClient
from tutor_ingest.llm.cooldown_store import CooldownStore, RedisCooldownStore
from tutor_ingest.llm.key_pool import (
    Credential,
    CredentialEntry,
    CredentialStatus,
    KeyPool,
    mask_key,
)

__all__ = [
    "CooldownStore",
    "Credential",
    "CredentialEntry",
    "CredentialStatus",
    "KeyPool",
    "ModelClient",
    "RedisCooldownStore",
    "mask_key",
]
