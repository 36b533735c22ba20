"""
Unified Configuration Module for Batch Registration

All operational settings are centralized here.
Defaults come from the environment; a YAML file and CLI flags may override them.
Import from this module: from core.config import load_config
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


@dataclass
class AppConfig:
    """Unified batch configuration."""

    # === Target ===
    TARGET_URL: str = os.getenv("TARGET_URL", "https://antrisimatupang.com").strip()
    CLIENT_KIND: str = os.getenv("CLIENT_KIND", "http")  # "http" or "browser"
    HEADLESS: bool = _env_bool("HEADLESS", "true")

    # === Concurrency ===
    INITIAL_CONCURRENCY: int = int(os.getenv("INITIAL_CONCURRENCY", "3"))
    PEAK_CONCURRENCY: int = int(os.getenv("PEAK_CONCURRENCY", "6"))
    ADAPT_WINDOW: int = int(os.getenv("ADAPT_WINDOW", "10"))
    ERROR_RATE_HIGH: float = float(os.getenv("ERROR_RATE_HIGH", "0.5"))
    ERROR_RATE_LOW: float = float(os.getenv("ERROR_RATE_LOW", "0.1"))
    LATENCY_HIGH_SECONDS: float = float(os.getenv("LATENCY_HIGH_SECONDS", "10.0"))
    LATENCY_LOW_SECONDS: float = float(os.getenv("LATENCY_LOW_SECONDS", "3.0"))
    MIN_ADMISSION_INTERVAL: float = float(os.getenv("MIN_ADMISSION_INTERVAL", "0.1"))
    ADMISSION_JITTER: float = float(os.getenv("ADMISSION_JITTER", "0.0"))

    # Busy window: lower starting concurrency (e.g. registration opening minute)
    PEAK_HOUR: Optional[int] = int(os.environ["PEAK_HOUR"]) if os.getenv("PEAK_HOUR") else None
    PEAK_MINUTE_RANGE: int = int(os.getenv("PEAK_MINUTE_RANGE", "2"))
    PEAK_HOUR_CONCURRENCY: int = int(os.getenv("PEAK_HOUR_CONCURRENCY", "2"))

    # === Retry / Backoff ===
    MAX_ATTEMPTS: int = int(os.getenv("MAX_ATTEMPTS", "3"))
    ATTEMPT_TIMEOUT_SECONDS: float = float(os.getenv("ATTEMPT_TIMEOUT_SECONDS", "25.0"))
    BACKOFF_BASE_SECONDS: float = float(os.getenv("BACKOFF_BASE_SECONDS", "2.0"))
    BACKOFF_FACTOR: float = float(os.getenv("BACKOFF_FACTOR", "1.5"))
    BACKOFF_MAX_SECONDS: float = float(os.getenv("BACKOFF_MAX_SECONDS", "10.0"))
    BACKOFF_JITTER_SECONDS: float = float(os.getenv("BACKOFF_JITTER_SECONDS", "0.5"))
    FAST_RETRY_MIN_SECONDS: float = float(os.getenv("FAST_RETRY_MIN_SECONDS", "0.3"))
    FAST_RETRY_MAX_SECONDS: float = float(os.getenv("FAST_RETRY_MAX_SECONDS", "0.8"))

    # === Sessions ===
    FRESH_SESSION_PER_ITEM: bool = _env_bool("FRESH_SESSION_PER_ITEM", "true")
    SESSION_CACHE_SIZE: int = int(os.getenv("SESSION_CACHE_SIZE", "50"))
    SESSION_MAX_AGE_SECONDS: float = float(os.getenv("SESSION_MAX_AGE_SECONDS", "600"))

    # === Classification ===
    FALLBACK_CHECK_URL: Optional[str] = os.getenv("FALLBACK_CHECK_URL") or None
    FALLBACK_GRACE_SECONDS: float = float(os.getenv("FALLBACK_GRACE_SECONDS", "3.0"))
    FALLBACK_TIMEOUT_SECONDS: float = float(os.getenv("FALLBACK_TIMEOUT_SECONDS", "8.0"))
    OBSERVE_TIMEOUT_SECONDS: float = float(os.getenv("OBSERVE_TIMEOUT_SECONDS", "20.0"))
    OBSERVE_POLL_SECONDS: float = float(os.getenv("OBSERVE_POLL_SECONDS", "0.4"))
    DETAIL_MAX_LENGTH: int = int(os.getenv("DETAIL_MAX_LENGTH", "400"))
    CLASSIFICATION_RULES: Dict[str, Any] = field(default_factory=dict)

    # === Input normalization ===
    IDENTIFIER_MAX_DIGITS: int = int(os.getenv("IDENTIFIER_MAX_DIGITS", "16"))
    PHONE_MAX_DIGITS: int = int(os.getenv("PHONE_MAX_DIGITS", "12"))

    # === Form mapping (logical field -> form input name) ===
    FORM_FIELD_MAP: Dict[str, str] = field(default_factory=lambda: {
        "name": "name",
        "identifier": "ktp",
        "phone": "phone_number",
        "challenge": "captcha_input",
        "token": "_token",
    })
    FORM_CONSENT_FIELDS: List[str] = field(default_factory=lambda: ["check", "check_2"])

    # === Output ===
    OUTPUT_DIR: str = os.getenv("OUTPUT_DIR", "./results")
    FLUSH_THRESHOLD: int = int(os.getenv("FLUSH_THRESHOLD", "1000"))

    # === Pre-flight ===
    PREFLIGHT_ENABLED: bool = _env_bool("PREFLIGHT_ENABLED", "true")
    PREFLIGHT_RETRY_SECONDS: float = float(os.getenv("PREFLIGHT_RETRY_SECONDS", "5.0"))

    # === Logging ===
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_DIR: str = os.getenv("LOG_DIR", "./logs")

    def validate(self) -> List[str]:
        """Validate configuration and return a list of problems."""
        problems = []

        if not self.TARGET_URL:
            problems.append("TARGET_URL is required")
        if self.CLIENT_KIND not in ("http", "browser"):
            problems.append(f"CLIENT_KIND must be 'http' or 'browser', got {self.CLIENT_KIND!r}")
        if self.MAX_ATTEMPTS < 1:
            problems.append("MAX_ATTEMPTS must be >= 1")
        if self.INITIAL_CONCURRENCY < 1:
            problems.append("INITIAL_CONCURRENCY must be >= 1")
        if self.PEAK_CONCURRENCY < self.INITIAL_CONCURRENCY:
            problems.append("PEAK_CONCURRENCY must be >= INITIAL_CONCURRENCY")
        if self.ATTEMPT_TIMEOUT_SECONDS <= 0:
            problems.append("ATTEMPT_TIMEOUT_SECONDS must be > 0")
        if self.BACKOFF_MAX_SECONDS < self.BACKOFF_BASE_SECONDS:
            problems.append("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS")
        if self.FALLBACK_GRACE_SECONDS > self.OBSERVE_TIMEOUT_SECONDS:
            problems.append("FALLBACK_GRACE_SECONDS must not exceed OBSERVE_TIMEOUT_SECONDS")
        if self.FLUSH_THRESHOLD < 1:
            problems.append("FLUSH_THRESHOLD must be >= 1")

        return problems

    def with_overrides(self, overrides: Dict[str, Any]) -> "AppConfig":
        """Return a copy with the given keys replaced (case-insensitive, None skipped)."""
        known = {f.name for f in fields(self)}
        changes = {}
        for key, value in overrides.items():
            if value is None:
                continue
            name = key.upper()
            if name not in known:
                raise KeyError(f"Unknown configuration key: {key}")
            changes[name] = value
        return replace(self, **changes)


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> AppConfig:
    """
    Build the configuration.

    Args:
        path: Optional YAML file whose top-level keys mirror AppConfig fields
        overrides: Optional final overrides (typically from CLI flags)

    Returns:
        AppConfig instance
    """
    cfg = AppConfig()

    if path:
        with open(Path(path)) as f:
            file_data = yaml.safe_load(f) or {}
        if not isinstance(file_data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        cfg = cfg.with_overrides(file_data)

    if overrides:
        cfg = cfg.with_overrides(overrides)

    return cfg


# Browser-like user agents rotated per session
USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
]
