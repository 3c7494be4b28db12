"""Application configuration."""
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")
    app_env: str = "development"
    debug: bool = True
    public_base_url: str | None = None
    database_url: str | None = None

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "flowbot"
    postgres_user: str = "flowbot"
    postgres_password: str = "changeme"

    redis_host: str = "localhost"
    redis_port: int = 6379
    rq_outbox_queue_name: str = "outbox"

    credentials_encryption_key: str = ""  # min 32 chars, encrypts channel and model secrets

    whatsapp_verify_token: str = "your-verify-token"
    whatsapp_graph_api_base: str = "https://graph.facebook.com/v24.0"

    resume_scheduler_enabled: bool = True
    resume_scheduler_interval_seconds: int = 10
    resume_scheduler_batch_limit: int = 200

    flow_max_steps_per_run: int = 1000  # steps between LOOP iterations
    api_node_default_timeout_seconds: int = 10
    ai_node_default_timeout_seconds: int = 30
    ai_history_default_length: int = 10
    simulator_default_address: str = "+1000000000"


@lru_cache
def get_settings() -> Settings:
    return Settings()
