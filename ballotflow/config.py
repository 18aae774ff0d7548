"""Pipeline settings, read once from the environment and injected."""

from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_PROMPTS_DIR = Path(__file__).parent / "prompts"


class ModelRateLimit(BaseModel):
    rpm: int  # requests per minute
    tpm: int  # request tokens per minute
    rpd: int | None = None  # requests per UTC day
    batch_tokens: int | None = None  # per-minute batch enqueue cap


# Static limits keyed by model id; a model missing here is never throttled.
MODEL_RATE_LIMITS: dict[str, ModelRateLimit] = {
    "gemini-2.5-pro": ModelRateLimit(rpm=150, tpm=2_000_000, rpd=10_000, batch_tokens=5_000_000),
    "gemini-1.5-pro": ModelRateLimit(rpm=1_000, tpm=4_000_000),
    "gemini-2.5-flash": ModelRateLimit(rpm=1_000, tpm=1_000_000, rpd=10_000),
    "gemini-2.0-flash": ModelRateLimit(rpm=2_000, tpm=4_000_000, batch_tokens=3_000_000),
}

# Comma-separated in the environment, e.g. GEMINI_ANALYZE_FALLBACK_MODELS=a,b
ModelList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    """Environment-aware configuration. Field names also work as keyword arguments."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    app_env: str = Field("development", validation_alias="APP_ENV")

    # Defaults to on in production, see _environment_defaults.
    gemini_enabled: bool = Field(False, validation_alias="GEMINI_ENABLED")
    gemini_api_key: str = Field("", validation_alias="GEMINI_API_KEY")
    analyze_models: ModelList = Field(
        default_factory=lambda: ["gemini-2.5-pro"], validation_alias="GEMINI_ANALYZE_MODEL"
    )
    analyze_fallback_models: ModelList = Field(
        default_factory=lambda: ["gemini-1.5-pro"],
        validation_alias="GEMINI_ANALYZE_FALLBACK_MODELS",
    )
    structure_models: ModelList = Field(
        default_factory=lambda: ["gemini-2.5-flash"], validation_alias="GEMINI_STRUCTURE_MODEL"
    )
    structure_fallback_models: ModelList = Field(
        default_factory=lambda: ["gemini-2.0-flash"],
        validation_alias="GEMINI_STRUCTURE_FALLBACK_MODELS",
    )
    max_output_tokens: int = Field(4096, gt=0, validation_alias="GEMINI_MAX_OUTPUT_TOKENS")
    use_thinking: bool = Field(False, validation_alias="GEMINI_THINKING")
    thinking_budget: int = Field(0, ge=0, validation_alias="GEMINI_THINKING_BUDGET")
    use_search: bool = Field(False, validation_alias="GEMINI_TOOLS_GOOGLE_SEARCH")
    # Keep production prompts small to control cost, see _environment_defaults.
    max_rows: int = Field(100, gt=0, validation_alias="GEMINI_MAX_ROWS")

    dispatch_concurrency: int = Field(4, gt=0, validation_alias="GEMINI_DISPATCH_CONCURRENCY")
    dispatch_max_per_tick: int = Field(20, gt=0, validation_alias="GEMINI_DISPATCH_MAX_PER_TICK")
    dispatch_time_budget_seconds: float = Field(
        50.0, gt=0, validation_alias="GEMINI_DISPATCH_TIME_BUDGET_SECONDS"
    )
    job_max_retries: int = Field(5, gt=0, validation_alias="JOB_MAX_RETRIES")
    job_timeout_seconds: float = Field(60 * 8, gt=0, validation_alias="JOB_TIMEOUT_SECONDS")
    retry_base_delay_seconds: float = Field(30.0, gt=0, validation_alias="RETRY_BASE_DELAY_SECONDS")
    rate_window_retention_days: int = Field(2, gt=0, validation_alias="RATE_WINDOW_RETENTION_DAYS")
    rate_limits: dict[str, ModelRateLimit] = Field(default_factory=lambda: dict(MODEL_RATE_LIMITS))

    analyze_prompt_path: Path = Field(
        _PROMPTS_DIR / "analyze.txt", validation_alias="GEMINI_PROMPT_ANALYZE_PATH"
    )
    structure_prompt_path: Path = Field(
        _PROMPTS_DIR / "structure.txt", validation_alias="GEMINI_PROMPT_STRUCTURE_PATH"
    )
    structure_schema_path: Path = Field(
        _PROMPTS_DIR / "structure_schema.json", validation_alias="GEMINI_STRUCTURE_SCHEMA_PATH"
    )

    resend_api_key: str = Field("", validation_alias="RESEND_API_KEY")
    resend_from: str = Field("Ballotflow <onboarding@resend.dev>", validation_alias="RESEND_FROM")
    admin_email: str = Field("", validation_alias="ADMIN_EMAIL")
    ops_email: str = Field("ops@ballotflow.local", validation_alias="OPS_EMAIL")
    public_app_url: str = Field("https://www.elevracommunity.com", validation_alias="PUBLIC_APP_URL")
    cron_secret: str = Field("", validation_alias="CRON_SECRET")

    @field_validator(
        "analyze_models",
        "analyze_fallback_models",
        "structure_models",
        "structure_fallback_models",
        mode="before",
    )
    @classmethod
    def split_model_list(cls, v: object) -> object:
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("gemini_api_key", "resend_api_key", "admin_email", "cron_secret", mode="after")
    @classmethod
    def strip_value(cls, v: str) -> str:
        return v.strip()

    @field_validator("public_app_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @model_validator(mode="after")
    def _environment_defaults(self) -> "Settings":
        if "gemini_enabled" not in self.model_fields_set:
            self.gemini_enabled = self.is_production
        if "max_rows" not in self.model_fields_set and self.gemini_enabled and self.is_production:
            self.max_rows = 30
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def load_settings() -> Settings:
    """Build Settings from the process environment.

    Called once at startup; the result is passed to everything that needs it.
    """
    return Settings()
