"""Shared utilities: logging setup, canonical hashing and retry helpers."""

from canonflow.utils.hashing import canonical_json, content_hash, sha256_hex
from canonflow.utils.logging_config import bind_run_context, clear_run_context, configure_logging
from canonflow.utils.retry import async_retry, backoff_delay

__all__ = [
    "async_retry",
    "backoff_delay",
    "bind_run_context",
    "canonical_json",
    "clear_run_context",
    "configure_logging",
    "content_hash",
    "sha256_hex",
]
