"""
Credential lookup.

Secrets are resolved per session from a ``SecretResolver`` and handed to the
provider descriptor; they are never written to settings or logs.
"""

import os
from typing import Dict, Mapping, Optional, Protocol

# provider id -> environment variable
DEFAULT_ENV_VARS: Dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "deepgram": "DEEPGRAM_API_KEY",
    "elevenlabs": "ELEVENLABS_API_KEY",
    "assemblyai": "ASSEMBLYAI_API_KEY",
    "custom": "APEXFLOW_CUSTOM_API_KEY",
}


class SecretResolver(Protocol):
    def __call__(self, provider_id: str) -> Optional[str]:
        ...


class EnvironmentSecretResolver:
    """Reads API keys from environment variables."""

    def __init__(
        self,
        env_vars: Optional[Mapping[str, str]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.env_vars = dict(DEFAULT_ENV_VARS if env_vars is None else env_vars)
        self._environ = os.environ if environ is None else environ

    def env_var_for(self, provider_id: str) -> str:
        return self.env_vars.get(
            provider_id, f"APEXFLOW_{provider_id.upper().replace('-', '_')}_API_KEY"
        )

    def __call__(self, provider_id: str) -> Optional[str]:
        value = self._environ.get(self.env_var_for(provider_id), "").strip()
        return value or None
