from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os

from .models import VALID_TIERS

SIZE_FALLBACK_DEFAULT = "default"
SIZE_FALLBACK_FAIL = "fail"
SIZE_FALLBACK_POLICIES = (SIZE_FALLBACK_DEFAULT, SIZE_FALLBACK_FAIL)


def _env(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from None


def _env_optional(name: str) -> str | None:
    return os.getenv(name, "").strip() or None


@dataclass(frozen=True)
class AppConfig:
    longhorn_namespace: str = field(
        default_factory=lambda: _env("LBM_LONGHORN_NAMESPACE", _env("LONGHORN_NS", "longhorn"))
    )
    label_prefix: str = field(default_factory=lambda: _env("LBM_LABEL_PREFIX", "backup.home.lab"))
    default_tier: str = field(default_factory=lambda: _env("LBM_DEFAULT_TIER", "daily"))
    default_storage_class: str = field(default_factory=lambda: _env("LBM_DEFAULT_STORAGE_CLASS", "longhorn"))
    fallback_size: str = field(default_factory=lambda: _env("LBM_FALLBACK_SIZE", "10Gi"))
    size_fallback_policy: str = field(
        default_factory=lambda: _env("LBM_SIZE_FALLBACK_POLICY", SIZE_FALLBACK_DEFAULT).lower()
    )
    restore_timeout_seconds: int = field(default_factory=lambda: _env_int("LBM_RESTORE_TIMEOUT_SECONDS", 600))
    restore_poll_interval_seconds: int = field(
        default_factory=lambda: _env_int("LBM_RESTORE_POLL_INTERVAL_SECONDS", 5)
    )
    request_timeout_seconds: int = field(default_factory=lambda: _env_int("LBM_REQUEST_TIMEOUT_SECONDS", 20))
    offsite_remote: str = field(default_factory=lambda: _env("LBM_OFFSITE_REMOTE", "b2-encrypted:"))
    rclone_config_path: str | None = field(default_factory=lambda: _env_optional("LBM_RCLONE_CONFIG"))
    offsite_grace_seconds: int = field(default_factory=lambda: _env_int("LBM_OFFSITE_GRACE_SECONDS", 86400))
    index_path: Path = field(default_factory=lambda: Path(_env("LBM_INDEX_PATH", "./backup-index.json")))
    notify_webhook_url: str | None = field(default_factory=lambda: _env_optional("LBM_NOTIFY_WEBHOOK_URL"))
    notify_timeout_seconds: int = field(default_factory=lambda: _env_int("LBM_NOTIFY_TIMEOUT_SECONDS", 10))
    log_level: str = field(default_factory=lambda: _env("LBM_LOG_LEVEL", "INFO").upper())
    log_file: Path | None = field(
        default_factory=lambda: Path(value) if (value := _env_optional("LBM_LOG_FILE")) else None
    )

    def __post_init__(self) -> None:
        if self.default_tier not in VALID_TIERS:
            raise ValueError(f"default_tier must be one of {', '.join(VALID_TIERS)}")
        if self.size_fallback_policy not in SIZE_FALLBACK_POLICIES:
            raise ValueError(f"size_fallback_policy must be one of {', '.join(SIZE_FALLBACK_POLICIES)}")
        for name in (
            "restore_timeout_seconds",
            "restore_poll_interval_seconds",
            "request_timeout_seconds",
            "notify_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.offsite_grace_seconds < 0:
            raise ValueError("offsite_grace_seconds must be >= 0")

    def label_key(self, name: str) -> str:
        return f"{self.label_prefix}/{name}"

    @property
    def enabled_label(self) -> str:
        return self.label_key("enabled")

    @property
    def tier_label(self) -> str:
        return self.label_key("tier")


def ensure_directories(config: AppConfig) -> None:
    config.index_path.parent.mkdir(parents=True, exist_ok=True)
    if config.log_file is not None:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
