"""Configuration settings for the application."""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = True
    DATA_DIR: str = "./data"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # LLM Configuration
    PLANNER: str = "openai"  # Options: openai, anthropic, tgi, ci
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"
    TGI_ENDPOINT: str = "http://tgi:8080/generate"
    FEEDBACK_MODEL: str | None = None

    # Agent loop
    MAX_STEPS: int = 25
    OPERATION_HINT_LIMIT: int = 8

    # Tool gateway
    GATEWAY_URL: str | None = None  # None => in-process tool registry
    GATEWAY_TIMEOUT: float = 30.0
    EXECUTE_TOOL_NAME: str = "openapi.execute"
    SCHEMA_TOOL_NAME: str = "openapi.schema"
    SEARCH_TOOL_NAME: str = "openapi.search"
    SUBMIT_TOOL_NAME: str = "agent_nps.submit"

    # Duplicate-call suppression
    DEDUPE_TOOLS: List[str] = ["openapi.execute"]
    APPROXIMATE_DEDUPE_TOOLS: List[str] = ["openapi.execute"]
    TIMESTAMP_TOLERANCE_MS: int = 90_000

    # Human approval
    VALIDATION_PATTERN: str = r"^(?:admin|store)?(?:post|delete)"
    VALIDATION_TTL_SECONDS: int = 300

    # Agent NPS
    ANPS_ENABLED: bool = True
    AGENT_ID: str = "opsbridge-assistant"
    AGENT_VERSION: str | None = None

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
