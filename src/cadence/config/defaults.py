"""Default configuration values for Cadence."""

from __future__ import annotations

DEFAULT_CONFIG: dict[str, dict[str, object]] = {
    "engine": {
        "fact_cache_ttl_ms": 5000,
        "allow_undefined_facts": False,
        "clear_cache_default": True,
    },
    "scheduler": {
        "enabled": True,
        "poll_interval_seconds": 60.0,
    },
    "events": {
        "enabled": True,
    },
    "logging": {
        "level": "info",
        "file": "",
        "log_to_file": False,
        "max_bytes": 10 * 1024 * 1024,
        "backup_count": 3,
    },
}
