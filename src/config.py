"""Centralized configuration for the styleset application."""

import os
from dataclasses import dataclass, field
from pathlib import Path


GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


def _env_api_key(name: str) -> str:
    """Read an API key, falling back to the shared GEMINI_API_KEY."""
    return os.environ.get(name) or os.environ.get("GEMINI_API_KEY", "")


def _env_optional_float(name: str) -> float | None:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass(frozen=True)
class TextModelConfig:
    """Configuration for the text model used to expand prompts."""
    base_url: str = GEMINI_OPENAI_BASE_URL
    api_key: str = ""
    model: str = "gemini-2.5-flash"
    temperature: float = 0.7


@dataclass(frozen=True)
class ImageModelConfig:
    """Configuration for the image generation model."""
    api_key: str = ""
    model: str = "gemini-2.5-flash-image-preview"
    default_mime_type: str = "image/png"


@dataclass(frozen=True)
class BatchConfig:
    """Defaults for batched image generation."""
    max_concurrency: int = 3
    max_retry_rounds: int = 2
    base_backoff_ms: int = 1000
    batch_timeout: float | None = None  # seconds, None disables the overall timeout


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the web server."""
    files_url_prefix: str = "/files"


@dataclass(frozen=True)
class PathConfig:
    """Centralized path configuration for the application."""

    @property
    def root_dir(self) -> Path:
        """Project root directory."""
        return Path(__file__).parent.parent

    @property
    def src_dir(self) -> Path:
        """Source code directory."""
        return self.root_dir / "src"

    @property
    def data_dir(self) -> Path:
        """Directory for all generated output."""
        override = os.environ.get("STYLESET_DATA_DIR")
        if override:
            return Path(override)
        return self.root_dir / "generated"

    @property
    def storage_dir(self) -> Path:
        """Directory for stored sets and project attachments."""
        return self.data_dir / "storage"

    @property
    def output_dir(self) -> Path:
        """Default directory for CLI runs."""
        return self.data_dir / "runs"


# Singleton path configuration instance
paths = PathConfig()


@dataclass
class Settings:
    """Application settings, can be overridden via environment variables."""
    text_model: TextModelConfig = field(default_factory=TextModelConfig)
    image_model: ImageModelConfig = field(default_factory=ImageModelConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables with STYLESET_ prefix."""
        text_model = TextModelConfig(
            base_url=os.environ.get("STYLESET_TEXT_BASE_URL", TextModelConfig.base_url),
            api_key=_env_api_key("STYLESET_TEXT_API_KEY"),
            model=os.environ.get("STYLESET_TEXT_MODEL", TextModelConfig.model),
            temperature=float(os.environ.get("STYLESET_TEXT_TEMPERATURE", TextModelConfig.temperature)),
        )
        image_model = ImageModelConfig(
            api_key=_env_api_key("STYLESET_IMAGE_API_KEY"),
            model=os.environ.get("STYLESET_IMAGE_MODEL", ImageModelConfig.model),
            default_mime_type=os.environ.get("STYLESET_DEFAULT_MIME_TYPE", ImageModelConfig.default_mime_type),
        )
        batch = BatchConfig(
            max_concurrency=int(os.environ.get("STYLESET_MAX_CONCURRENCY", BatchConfig.max_concurrency)),
            max_retry_rounds=int(os.environ.get("STYLESET_MAX_RETRY_ROUNDS", BatchConfig.max_retry_rounds)),
            base_backoff_ms=int(os.environ.get("STYLESET_BASE_BACKOFF_MS", BatchConfig.base_backoff_ms)),
            batch_timeout=_env_optional_float("STYLESET_BATCH_TIMEOUT"),
        )
        server = ServerConfig(
            files_url_prefix=os.environ.get("STYLESET_FILES_URL_PREFIX", ServerConfig.files_url_prefix),
        )
        return cls(
            text_model=text_model,
            image_model=image_model,
            batch=batch,
            server=server,
        )


# Global settings instance - use from_env() for environment-aware settings
settings = Settings.from_env()
