"""Gateway configuration."""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # Server
    host: str = field(default_factory=lambda: os.getenv("GATEWAY_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("GATEWAY_PORT", "8080")))
    api_key: str = field(default_factory=lambda: os.getenv("API_KEY", ""))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG", ""))

    # Ollama backend
    ollama_url: str = field(default_factory=lambda: os.getenv("OLLAMA_URL", "http://localhost:11434"))
    model_id: str = field(default_factory=lambda: os.getenv("MODEL_ID", "smollm:135m"))
    model_alias: str = field(default_factory=lambda: os.getenv("MODEL_ALIAS", ""))
    embedding_model: str = field(default_factory=lambda: os.getenv("EMBEDDING_MODEL", "nomic-embed-text"))
    request_timeout: float = field(default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT", "300")))
    preload_model: bool = field(default_factory=lambda: _env_bool("PRELOAD_MODEL", "true"))

    # Generation
    max_tokens_cap: int = field(default_factory=lambda: int(os.getenv("MAX_TOKENS_CAP", "2048")))
    default_max_tokens: int = field(default_factory=lambda: int(os.getenv("DEFAULT_MAX_TOKENS", "256")))
    max_tool_iterations: int = field(default_factory=lambda: int(os.getenv("MAX_TOOL_ITERATIONS", "5")))
    stream_chunk_size: int = field(default_factory=lambda: int(os.getenv("STREAM_CHUNK_SIZE", "1")))

    @property
    def served_model(self) -> str:
        """Model identifier echoed back to clients."""
        return self.model_alias or self.model_id

    @property
    def auth_enabled(self) -> bool:
        return bool(self.api_key)


# Global config instance
config = Config()
