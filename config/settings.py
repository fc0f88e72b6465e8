import os
from typing import Optional
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # ---------------------------
    # ✅ API Keys
    # ---------------------------
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")

    # ---------------------------
    # ✅ LLM Configuration
    # ---------------------------
    GEMINI_MODEL: str = "gemini-1.5-pro"
    TEMPERATURE: float = 0.7
    MAX_TOKENS: int = 1000
    LLM_TIMEOUT_SECONDS: float = 30.0

    # ---------------------------
    # ✅ Storage Configuration
    # ---------------------------
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory")
    ELASTICSEARCH_URL: str = os.getenv("ELASTICSEARCH_URL",
                                       "http://localhost:9200")
    ELASTICSEARCH_INDEX_PREFIX: str = os.getenv("ELASTICSEARCH_INDEX_PREFIX",
                                                "agentchat_")

    # ---------------------------
    # ✅ Application Configuration
    # ---------------------------
    FASTAPI_HOST: str = "0.0.0.0"
    FASTAPI_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    AUTO_RELOAD: bool = True
    MOCK_SERVICES: bool = True
    CORS_ORIGINS: list[str] = ["http://localhost:5173",
                               "http://127.0.0.1:5173"]

    # ---------------------------
    # ✅ Routing Configuration
    # ---------------------------
    ROUTING_RULES_PATH: Optional[str] = os.getenv("ROUTING_RULES_PATH")
    RECENT_DOCUMENTS_LIMIT: int = 3
    HISTORY_SCAN_LIMIT: int = 50
    HISTORY_KEY_TERMS: int = 10
    HISTORY_MIN_RELEVANCE: float = 0.3
    HISTORY_RESULTS_LIMIT: int = 5
    SWITCH_COOLDOWN_MINUTES: int = 5
    CHAT_HISTORY_LIMIT: int = 20

    # ---------------------------
    # ✅ Multi-Agent Conversation Configuration
    # ---------------------------
    DEFAULT_MAX_TURNS: int = 5
    CONVERSATION_CONTEXT_TURNS: int = 5

    # ---------------------------
    # ✅ Support Configuration
    # ---------------------------
    URGENT_ESCALATION_MINUTES: int = 30
    HIGH_ESCALATION_MINUTES: int = 120
    SUPPORT_AGENT_ROLES: list[str] = ["support", "assistant"]

    # ---------------------------
    # ✅ Feedback Configuration
    # ---------------------------
    FEEDBACK_ANALYSIS_WINDOW: int = 10
    FEEDBACK_MIN_SAMPLES: int = 3
    NEGATIVE_RATIO_THRESHOLD: float = 0.3
    CONFIDENCE_THRESHOLD: float = 0.7
    COMMON_ISSUE_MIN_MENTIONS: int = 2
    NOTIFICATION_WINDOW_DAYS: int = 7
    NOTIFICATION_MIN_FEEDBACK: int = 5

    # ---------------------------
    # ✅ Response Templates
    # ---------------------------
    FALLBACK_RESPONSE: str = (
        "I'm sorry, I couldn't generate a response right now. "
        "Please try again in a moment."
    )

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
