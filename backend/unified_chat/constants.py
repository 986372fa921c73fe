"""Shared constants used across the chat layer."""

# =============================================================================
# Provider identifiers
# =============================================================================

GROQ = "groq"
CEREBRAS = "cerebras"
MISTRAL = "mistral"
OPENROUTER = "openrouter"
GEMINI = "gemini"
COHERE = "cohere"
CLAUDE = "claude"

# Providers speaking the OpenAI chat-completions dialect
OPENAI_COMPATIBLE_PROVIDERS = {GROQ, CEREBRAS, MISTRAL, OPENROUTER}


# =============================================================================
# Model Constants - SINGLE SOURCE OF TRUTH
# =============================================================================
# Update these when providers retire models.

GROQ_LLAMA = "llama-3.3-70b-versatile"
CEREBRAS_LLAMA = "llama-3.3-70b"
MISTRAL_SMALL = "mistral-small-latest"
OPENROUTER_DEFAULT = "gpt-3.5-turbo"
GEMINI_FLASH_LITE = "gemini-2.0-flash-lite"
COHERE_COMMAND = "command"
CLAUDE_HAIKU = "claude-haiku-4-5"


# =============================================================================
# Endpoints and credential keys
# =============================================================================

BASE_URLS: dict[str, str] = {
    GROQ: "https://api.groq.com/openai/v1",
    CEREBRAS: "https://api.cerebras.ai/v1",
    MISTRAL: "https://api.mistral.ai/v1",
    OPENROUTER: "https://openrouter.ai/api/v1",
    GEMINI: "https://generativelanguage.googleapis.com",
    COHERE: "https://api.cohere.ai/v1",
    CLAUDE: "https://api.anthropic.com",
}

API_KEY_ENV: dict[str, str] = {
    GROQ: "GROQ_API_KEY",
    CEREBRAS: "CEREBRAS_API_KEY",
    MISTRAL: "MISTRAL_API_KEY",
    OPENROUTER: "OPENROUTER_API_KEY",
    GEMINI: "GEMINI_API_KEY",
    COHERE: "COHERE_API_KEY",
    CLAUDE: "ANTHROPIC_API_KEY",
}


# =============================================================================
# Service defaults
# =============================================================================

DEFAULT_PROVIDER = GROQ
DEFAULT_FALLBACK_PROVIDERS = [CEREBRAS, MISTRAL, OPENROUTER, GEMINI, COHERE, CLAUDE]

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0

HEALTH_CHECK_INTERVAL_SECONDS = 30.0
HEALTH_CHECK_TIMEOUT_SECONDS = 10.0
# Probes kept per provider for the rolling error rate
HEALTH_HISTORY_SIZE = 10

SESSION_TIMEOUT_SECONDS = 3600.0
SESSION_CLEANUP_INTERVAL_SECONDS = 60.0

METRICS_MAX_ENTRIES = 1000
METRICS_TRIM_TO = 500
METRICS_RETENTION_SECONDS = 86400.0
METRICS_PRUNE_INTERVAL_SECONDS = 86400.0

# Session preference defaults
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048
DEFAULT_MAX_CONTEXT_LENGTH = 10

# Tiny request used by health probes
HEALTH_PROBE_MESSAGE = "Hello"
HEALTH_PROBE_MAX_TOKENS = 10
