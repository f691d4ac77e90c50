# src/config/settings.py
from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional

# Get project root (2 levels up from this file)
PROJECT_ROOT = Path(__file__).parent.parent.parent


class ConfigurationError(RuntimeError):
    """Raised when a required external credential or setting is missing."""


class Settings(BaseSettings):
    # LLM (OpenAI-compatible endpoint, e.g. OpenRouter)
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    openai_llm_model: str = "gpt-4o-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    llm_temperature: float = 0.3

    # SQL Server
    sql_server_host: str = "localhost"
    sql_server_port: int = 1433
    sql_server_database: str = "feedback"
    sql_server_username: str = "sa"
    sql_server_password: str = ""

    # Pipeline config
    batch_size: int = 50
    classification_batch_size: int = 10
    severity_threshold: int = 80
    alerts_enabled: bool = True
    clustering_strategy: str = "singleton"
    similarity_distance_threshold: float = 0.25
    max_workers: int = 4

    class Config:
        env_file = str(PROJECT_ROOT / ".env")
        case_sensitive = False
