# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Application configuration using pydantic-settings.
"""

from enum import Enum
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

from class_chat.services.compaction.settings import CompactionSettings


class GroundingMode(str, Enum):
    """How strictly the tutor sticks to the supplied class context.

    Attributes:
        STRICT (str): Answer only from blueprint/material context.
        BALANCED (str): Prefer context, allow cautious general explanations.
        LENIENT (str): Context is a hint; general knowledge is allowed.
    """

    STRICT = "strict"
    BALANCED = "balanced"
    LENIENT = "lenient"


class Settings(BaseSettings):
    """Application settings.

    Attributes:
        APP_NAME (str): Display name of the application.
        DEBUG (bool): Whether to enable debug mode.
        LOG_LEVEL (str): Root logging level.
        CORS_ORIGINS (str): Comma-separated list of allowed CORS origins.
        OPENAI_API_KEY (str): OpenAI API key for LLM calls.
        GOOGLE_API_KEY (str): Google AI Studio key for Gemini models.
        AGENT_MODEL (str): Model identifier for the tutor LLM.
        AGENT_TEMPERATURE (float): Sampling temperature for the tutor.
        AGENT_MAX_TOKENS (int): Maximum token limit for tutor responses.
        PLATFORM_API_URL (str): Base URL of the platform service that owns
            messages, compaction records, blueprints and materials.
        PLATFORM_API_TIMEOUT (float): Timeout in seconds for platform calls.
        AI_GROUNDING_MODE (GroundingMode): Grounding mode stated in the
            tutor system prompt.
        MAX_CHAT_MESSAGE_CHARS (int): Maximum length of an inbound message.
        CHAT_CONTEXT_RECENT_TURNS (int): Turns always kept verbatim.
        CHAT_COMPACTION_TRIGGER_TURNS (int): Minimum history length before
            compaction is considered.
        CHAT_COMPACTION_MIN_NEW_TURNS (int): Minimum unsummarized turns
            required for a compaction pass.
        CHAT_COMPACTION_CONTEXT_PRESSURE (float): Pressure ratio that
            triggers compaction.
        CHAT_CONTEXT_WINDOW_TOKENS (int): Model context window in tokens.
        CHAT_OUTPUT_TOKEN_RESERVE (int): Tokens reserved for the answer.
        MAX_LLM_RETRIES (int): Retries for transient model errors.
        LLM_RETRY_BASE_DELAY (float): Initial retry delay, doubled per retry.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    APP_NAME: str = "Class Chat Tutor"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000"

    OPENAI_API_KEY: str = ""
    GOOGLE_API_KEY: str = ""
    AGENT_MODEL: str = "gpt-4o-mini"
    AGENT_TEMPERATURE: float = 0.2
    AGENT_MAX_TOKENS: int = 1200

    PLATFORM_API_URL: str = "http://localhost:8000"
    PLATFORM_API_TIMEOUT: float = 10.0

    AI_GROUNDING_MODE: GroundingMode = GroundingMode.BALANCED
    MAX_CHAT_MESSAGE_CHARS: int = 1200

    # Context compaction
    CHAT_CONTEXT_RECENT_TURNS: int = 12
    CHAT_COMPACTION_TRIGGER_TURNS: int = 30
    CHAT_COMPACTION_MIN_NEW_TURNS: int = 6
    CHAT_COMPACTION_CONTEXT_PRESSURE: float = 0.8
    CHAT_CONTEXT_WINDOW_TOKENS: int = 12_000
    CHAT_OUTPUT_TOKEN_RESERVE: int = 1_400

    # LLM retry (transient / retryable errors)
    MAX_LLM_RETRIES: int = 2
    LLM_RETRY_BASE_DELAY: float = 1.0  # seconds, doubles each retry

    def get_cors_origins(self) -> List[str]:
        """Parse CORS origins as list.

        Returns:
            List[str]: A list of origin URL strings split from the
                comma-separated CORS_ORIGINS setting.
        """
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    def compaction_settings(self) -> CompactionSettings:
        """Build the engine tunables from the environment-backed fields.

        Returns:
            CompactionSettings: Explicit tunables passed into the engine.
        """
        return CompactionSettings(
            recent_turns=self.CHAT_CONTEXT_RECENT_TURNS,
            trigger_turns=self.CHAT_COMPACTION_TRIGGER_TURNS,
            min_new_turns=self.CHAT_COMPACTION_MIN_NEW_TURNS,
            pressure_threshold=self.CHAT_COMPACTION_CONTEXT_PRESSURE,
            context_window_tokens=self.CHAT_CONTEXT_WINDOW_TOKENS,
            output_token_reserve=self.CHAT_OUTPUT_TOKEN_RESERVE,
        )

    @property
    def context_fetch_limit(self) -> int:
        """Number of newest messages fetched per send.

        Returns:
            int: Enough history to cover the trigger window three times over.
        """
        return max(
            self.CHAT_COMPACTION_TRIGGER_TURNS * 3,
            self.CHAT_CONTEXT_RECENT_TURNS * 3,
            180,
        )


settings = Settings()
