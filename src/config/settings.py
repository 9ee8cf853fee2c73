"""Application settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Credential store
    store_backend: str = "json"  # "json" | "dynamodb"
    store_path: str = "gateway-store.json"  # path to JSON document store
    dynamodb_table_prefix: str = "llm-gateway"
    aws_region: str = "us-east-1"

    # Upstream forwarding (single attempt, no retry)
    upstream_timeout_seconds: float = 30.0
    upstream_connect_timeout_seconds: float = 10.0

    # Usage accounting
    usage_queue_size: int = 1000  # pending jobs before new ones are dropped
    usage_workers: int = 2

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def dynamodb_tables(self) -> dict[str, str]:
        """Map collection name -> DynamoDB table name."""
        prefix = self.dynamodb_table_prefix.strip("-")
        return {
            "client_keys": f"{prefix}-client-keys",
            "backend_configs": f"{prefix}-backend-configs",
            "usage_records": f"{prefix}-usage-records",
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()
