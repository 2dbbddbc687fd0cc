import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv


class ConfigError(Exception):
    """Configuration error."""
    pass


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


def _optional(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if value is None or not str(value).strip():
        return None
    return value.strip()


@dataclass(frozen=True)
class Settings:
    """Process-wide settings read once at start from the environment."""

    data_dir: Path
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    spotify_redirect_uri: str = "http://127.0.0.1:3001/callback"
    spotify_market: Optional[str] = None
    apple_music_developer_token: Optional[str] = None
    apple_music_storefront: str = "us"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    search_limit: Optional[int] = None
    pacing_ms: int = 100
    reasoning_attempts: int = 3
    refresh_timeout_s: int = 300
    scheduler_interval_s: int = 60
    cooldown_hours: int = 24
    max_workers: int = 4
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "json"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> "Settings":
        """Build settings from environment variables.

        Args:
            env: Mapping to read instead of ``os.environ`` (tests pass a dict)
            dotenv_path: Optional .env file loaded into the process environment first

        Returns:
            Settings instance
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ

        data_dir = env.get("MIXWELL_DATA_DIR") or str(Path.home() / ".mixwell")
        search_limit = _int(env, "MIXWELL_SEARCH_LIMIT", 0) or None
        log_format = (env.get("MIXWELL_LOG_FORMAT") or "json").lower()
        if log_format not in ("json", "text"):
            raise ConfigError(f"MIXWELL_LOG_FORMAT must be 'json' or 'text', got {log_format!r}")

        return cls(
            data_dir=Path(data_dir).expanduser(),
            spotify_client_id=_optional(env, "SPOTIFY_CLIENT_ID"),
            spotify_client_secret=_optional(env, "SPOTIFY_CLIENT_SECRET"),
            spotify_redirect_uri=_optional(env, "SPOTIFY_REDIRECT_URI") or cls.spotify_redirect_uri,
            spotify_market=_optional(env, "SPOTIFY_MARKET"),
            apple_music_developer_token=_optional(env, "APPLE_MUSIC_DEVELOPER_TOKEN"),
            apple_music_storefront=_optional(env, "APPLE_MUSIC_STOREFRONT") or "us",
            openai_api_key=_optional(env, "OPENAI_API_KEY"),
            openai_model=_optional(env, "OPENAI_MODEL") or "gpt-4o-mini",
            search_limit=search_limit,
            pacing_ms=_int(env, "MIXWELL_PACING_MS", 100),
            reasoning_attempts=max(1, _int(env, "MIXWELL_REASONING_ATTEMPTS", 3)),
            refresh_timeout_s=_int(env, "MIXWELL_REFRESH_TIMEOUT_S", 300),
            scheduler_interval_s=max(1, _int(env, "MIXWELL_SCHEDULER_INTERVAL_S", 60)),
            cooldown_hours=_int(env, "MIXWELL_COOLDOWN_HOURS", 24),
            max_workers=max(1, _int(env, "MIXWELL_MAX_WORKERS", 4)),
            log_level=(env.get("MIXWELL_LOG_LEVEL") or "INFO").upper(),
            log_file=_optional(env, "MIXWELL_LOG_FILE"),
            log_format=log_format,
        )

    def get_spotify_scopes(self) -> list:
        """Get minimal required Spotify scopes."""
        return [
            'playlist-read-private',      # Read private playlists
            'playlist-modify-public',     # Create/modify public playlists
            'playlist-modify-private',    # Create/modify private playlists
            'user-top-read',              # Known artists for new-artists-only
            'user-read-recently-played',
        ]

    def get_spotify_scope_string(self) -> str:
        """Get Spotify scopes as space-separated string."""
        return ' '.join(self.get_spotify_scopes())

    def get_spotify_client_config(self) -> Dict[str, str]:
        """Get Spotify client configuration, raising ConfigError when incomplete."""
        if not self.spotify_client_id:
            raise ConfigError("SPOTIFY_CLIENT_ID not found in environment")
        if not self.spotify_client_secret:
            raise ConfigError("SPOTIFY_CLIENT_SECRET not found in environment")

        return {
            'client_id': self.spotify_client_id,
            'client_secret': self.spotify_client_secret,
            'redirect_uri': self.spotify_redirect_uri,
        }

    def require_openai_key(self) -> str:
        if not self.openai_api_key:
            raise ConfigError("OPENAI_API_KEY not found in environment")
        return self.openai_api_key

    def validate(self) -> Dict[str, bool]:
        """Presence map of configuration values. Never includes the values themselves."""
        return {
            'spotify_client_id': bool(self.spotify_client_id),
            'spotify_client_secret': bool(self.spotify_client_secret),
            'spotify_redirect_uri': bool(self.spotify_redirect_uri),
            'apple_music_developer_token': bool(self.apple_music_developer_token),
            'openai_api_key': bool(self.openai_api_key),
        }

    def get_config_summary(self) -> Dict[str, Any]:
        """Get configuration summary (without sensitive data)."""
        return {
            'data_dir': str(self.data_dir),
            'validation': self.validate(),
            'spotify_scopes': self.get_spotify_scopes(),
            'openai_model': self.openai_model,
            'apple_music_storefront': self.apple_music_storefront,
            'scheduler_interval_s': self.scheduler_interval_s,
            'cooldown_hours': self.cooldown_hours,
            'refresh_timeout_s': self.refresh_timeout_s,
            'max_workers': self.max_workers,
        }
