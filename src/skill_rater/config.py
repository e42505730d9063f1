"""Application configuration using pydantic-settings."""

import functools
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


def _find_project_root() -> Path:
    """Find project root by locating pyproject.toml."""
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists():
            return parent
    return Path(__file__).resolve().parent.parent.parent


class CefrBandSetting(BaseModel):
    level: str
    min: int
    max: int


DEFAULT_CEFR_BANDS: list[CefrBandSetting] = [
    CefrBandSetting(level="Pre-A1", min=600, max=799),
    CefrBandSetting(level="A1", min=800, max=999),
    CefrBandSetting(level="A2", min=1000, max=1199),
    CefrBandSetting(level="B1", min=1200, max=1399),
    CefrBandSetting(level="B2", min=1400, max=1599),
    CefrBandSetting(level="C1", min=1600, max=1799),
    CefrBandSetting(level="C2", min=1800, max=2500),
]


class RatingSettings(BaseModel):
    """Tunable constants of the rating engine."""

    # New skill rating defaults
    default_rating: int = 1000
    default_rd: int = 350
    rd_floor: int = 50
    attempt_rd_step: int = 10
    dialogue_rd_step: int = 5
    profile_rd_step: int = 5

    # K-factor policy
    k_provisional: int = 40
    k_standard: int = 20
    k_established: int = 10
    uncertain_rd_threshold: int = 200
    provisional_attempts: int = 20
    established_attempts: int = 100
    established_rating: int = 1600

    # Exercise difficulty (inverse update)
    difficulty_k_divisor: int = 4
    difficulty_k_min: int = 5

    # Scoring
    max_time_bonus: float = 0.1
    pass_threshold: float = 0.5

    # Dialogue
    dialogue_default_rating: int = 1200
    core_skills: list[str] = Field(
        default_factory=lambda: ["reading", "writing", "listening", "speaking"]
    )
    mode_multipliers: dict[str, float] = Field(
        default_factory=lambda: {"controlled": 0.5, "guided": 0.75, "open": 1.0}
    )
    composite_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "grammar_accuracy": 0.3,
            "lexical_complexity": 0.2,
            "fluency": 0.3,
            "register": 0.2,
        }
    )
    skill_criteria: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "writing": ["grammar_accuracy", "lexical_complexity"],
            "speaking": ["fluency", "register"],
            "reading": ["lexical_complexity"],
            "grammar": ["grammar_accuracy"],
        }
    )
    cefr_difficulty_anchors: dict[str, int] = Field(
        default_factory=lambda: {
            "Pre-A1": 800,
            "A1": 1000,
            "A2": 1200,
            "B1": 1400,
            "B2": 1600,
            "C1": 1800,
            "C2": 2000,
        }
    )
    default_difficulty_anchor: int = 1200
    neutral_criterion_score: float = 0.5
    enforce_mode_unlock: bool = True

    default_cefr_bands: list[CefrBandSetting] = Field(
        default_factory=lambda: [band.model_copy() for band in DEFAULT_CEFR_BANDS]
    )

    # Persistence
    max_write_retries: int = 3
    duplicate_window_seconds: float = 30.0


class YamlSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads from settings.yaml."""

    def get_field_value(self, field_name: str) -> tuple[Any, str, bool]:
        """Not used - we implement __call__ instead."""
        return None, "", False

    def __call__(self) -> dict[str, Any]:
        """Load settings from YAML file."""
        yaml_path = _find_project_root() / "config" / "settings.yaml"
        if not yaml_path.exists():
            return {}

        with open(yaml_path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        # Flatten nested structure to match Settings field names
        flattened: dict[str, Any] = {}
        if 'server' in data:
            flattened['host'] = data['server'].get('host')
            flattened['port'] = data['server'].get('port')
        if 'database' in data:
            flattened['database_path'] = data['database'].get('path')
        if 'openai' in data:
            flattened['evaluation_model'] = data['openai'].get('evaluation_model')
            flattened['openai_base_url'] = data['openai'].get('base_url')
            flattened['evaluation_timeout_seconds'] = data['openai'].get('timeout_seconds')
        if 'rating' in data:
            flattened['rating'] = data['rating']

        return {k: v for k, v in flattened.items() if v is not None}


class Settings(BaseSettings):
    """Application settings loaded from environment and config files."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Evaluation service (OpenAI-compatible chat completions)
    openai_api_key: str = Field(description="OpenAI API key")
    evaluation_model: str = Field(default="gpt-4o-mini")
    openai_base_url: str | None = Field(default=None)
    evaluation_timeout_seconds: float = Field(default=30.0)

    # Authentication (optional: None disables the shared-secret check)
    app_secret: str | None = Field(default=None)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Storage
    database_path: str = Field(default="data/skill_rater.db")

    rating: RatingSettings = Field(default_factory=RatingSettings)

    project_root: Path = Field(default_factory=_find_project_root)

    @property
    def resolved_database_path(self) -> str:
        if self.database_path == ":memory:":
            return self.database_path
        path = Path(self.database_path)
        if not path.is_absolute():
            path = self.project_root / path
        return str(path)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings sources to include YAML file.

        Priority order (highest to lowest):
        1. init_settings (arguments passed to Settings())
        2. env_settings (environment variables)
        3. dotenv_settings (.env file)
        4. YamlSettingsSource (settings.yaml)
        5. file_secret_settings
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlSettingsSource(settings_cls),
            file_secret_settings,
        )


@functools.lru_cache
def get_settings() -> Settings:
    """Get application settings singleton."""
    return Settings()
