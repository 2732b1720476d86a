from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
import os
from pathlib import Path
import tomllib
from typing import Any


DEFAULT_DISALLOWED_GENRES = ("Hentai",)
_ALLOWED_STRATEGIES = {"standard", "enhanced"}


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return int(raw)


@dataclass(slots=True)
class Settings:
    api_url: str = os.getenv("CATALOG_IMPORT_API_URL", "https://graphql.anilist.co")
    timeout_seconds: float = float(os.getenv("CATALOG_IMPORT_TIMEOUT_SECONDS", "30"))
    rate_limit_calls: int = int(os.getenv("CATALOG_IMPORT_RATE_LIMIT_CALLS", "1"))
    rate_limit_period_seconds: float = float(os.getenv("CATALOG_IMPORT_RATE_LIMIT_PERIOD_SECONDS", "1.0"))
    low_water_mark: int = int(os.getenv("CATALOG_IMPORT_LOW_WATER_MARK", "10"))
    backoff_step_seconds: float = float(os.getenv("CATALOG_IMPORT_BACKOFF_STEP_SECONDS", "6.0"))
    max_backoff_seconds: float = float(os.getenv("CATALOG_IMPORT_MAX_BACKOFF_SECONDS", "60"))
    cooldown_seconds: float = float(os.getenv("CATALOG_IMPORT_COOLDOWN_SECONDS", "60"))
    max_rate_limit_retries: int = int(os.getenv("CATALOG_IMPORT_MAX_RATE_LIMIT_RETRIES", "5"))
    per_page: int = int(os.getenv("CATALOG_IMPORT_PER_PAGE", "50"))
    batch_size: int = int(os.getenv("CATALOG_IMPORT_BATCH_SIZE", "10"))
    max_pages: int = int(os.getenv("CATALOG_IMPORT_MAX_PAGES", "0"))
    incremental_pages: int = int(os.getenv("CATALOG_IMPORT_INCREMENTAL_PAGES", "2"))
    progress_every_pages: int = int(os.getenv("CATALOG_IMPORT_PROGRESS_EVERY_PAGES", "10"))
    error_sample_size: int = int(os.getenv("CATALOG_IMPORT_ERROR_SAMPLE_SIZE", "5"))
    strategy: str = os.getenv("CATALOG_IMPORT_STRATEGY", "standard")
    min_score: int | None = field(default_factory=lambda: _env_optional_int("CATALOG_IMPORT_MIN_SCORE"))
    disallowed_genres: tuple[str, ...] = field(
        default_factory=lambda: _env_list("CATALOG_IMPORT_DISALLOWED_GENRES", DEFAULT_DISALLOWED_GENRES)
    )


def load_settings(config_path: Path | None = None, **overrides: Any) -> Settings:
    """Build settings from env defaults, an optional ``[import]`` TOML section and explicit overrides.

    Overrides whose value is ``None`` are ignored so CLI options left unset fall through.
    """

    settings = Settings()
    if config_path is not None:
        doc = _load_toml(config_path)
        section = _require_section(doc, "import")
        settings = _apply_section(settings, section)

    explicit = {key: value for key, value in overrides.items() if value is not None}
    if explicit:
        settings = replace(settings, **explicit)
    _validate(settings)
    return settings


def _load_toml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise RuntimeError(f"Config file not found: {config_path}")
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _require_section(doc: dict[str, Any], section_name: str) -> dict[str, Any]:
    section = doc.get(section_name)
    if not isinstance(section, dict):
        raise RuntimeError(f"Missing [{section_name}] section in config.")
    return section


def _apply_section(settings: Settings, section: dict[str, Any]) -> Settings:
    known = {item.name: item for item in fields(Settings)}
    unknown = sorted(set(section) - set(known))
    if unknown:
        raise RuntimeError(f"Unknown keys in [import] config: {unknown}")

    values: dict[str, Any] = {}
    for key, raw in section.items():
        current = getattr(settings, key)
        try:
            if key == "disallowed_genres":
                if not isinstance(raw, list):
                    raise TypeError("expected an array of strings")
                values[key] = tuple(str(item) for item in raw)
            elif key == "min_score":
                values[key] = None if raw is None else int(raw)
            elif isinstance(current, int):
                values[key] = int(raw)
            elif isinstance(current, float):
                values[key] = float(raw)
            else:
                values[key] = str(raw)
        except (TypeError, ValueError) as exc:
            raise RuntimeError(f"Invalid import.{key} in config: {exc}") from exc
    return replace(settings, **values)


def _validate(settings: Settings) -> None:
    if settings.strategy not in _ALLOWED_STRATEGIES:
        raise RuntimeError(
            f"Invalid strategy {settings.strategy!r}; allowed={sorted(_ALLOWED_STRATEGIES)}"
        )
    if not 1 <= settings.per_page <= 50:
        raise RuntimeError("Invalid per_page: AniList pages hold between 1 and 50 items")
    if settings.batch_size < 1:
        raise RuntimeError("Invalid batch_size: must be >= 1")
    if settings.max_pages < 0:
        raise RuntimeError("Invalid max_pages: must be >= 0 (0 disables the cap)")
    if settings.incremental_pages < 1:
        raise RuntimeError("Invalid incremental_pages: must be >= 1")
    if settings.max_backoff_seconds < 0 or settings.backoff_step_seconds < 0:
        raise RuntimeError("Invalid backoff settings: must be >= 0")
    if settings.progress_every_pages < 1:
        raise RuntimeError("Invalid progress_every_pages: must be >= 1")
    if settings.rate_limit_calls < 1:
        raise RuntimeError("Invalid rate_limit_calls: must be >= 1")
    if settings.rate_limit_period_seconds <= 0:
        raise RuntimeError("Invalid rate_limit_period_seconds: must be > 0")
    if settings.error_sample_size < 0:
        raise RuntimeError("Invalid error_sample_size: must be >= 0")
    if settings.max_rate_limit_retries < 0:
        raise RuntimeError("Invalid max_rate_limit_retries: must be >= 0")
