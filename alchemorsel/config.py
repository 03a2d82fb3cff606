from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Env(Enum):
    local = "local"
    dev = "dev"
    prod = "prod"


class EmbeddingFailurePolicy(Enum):
    """What a deployment does when the embedding call fails."""

    reject = "reject"
    placeholder = "placeholder"


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    env: Env = Env.local
    log_level: str = "INFO"

    # Text generation, any OpenAI compatible chat completions api.
    generation_base_url: str = "https://api.deepseek.com/v1/"
    generation_api_key: str | None = None
    generation_model: str = "deepseek-chat"
    generation_max_tokens: int = 3000
    generation_temperature: float = 0.1
    generation_timeout: float = 120.0

    # Embeddings.
    openai_api_key: str | None = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = Field(1536, gt=0)
    embedding_timeout: float = 30.0
    embedding_failure_policy: EmbeddingFailurePolicy = EmbeddingFailurePolicy.reject

    retry_attempts: int = Field(3, ge=1)
    retry_backoff: float = Field(1.0, ge=0)

    batch_size: int = Field(5, ge=1)
    batch_delay: float = Field(2.0, ge=0)

    db_url: str = "sqlite+aiosqlite:///alchemorsel.db"
    pinecone_index: str = "recipes"
