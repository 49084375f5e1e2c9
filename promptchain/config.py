"""Configuration loading and defaults.

Reads from config.toml at the project root, with environment variable overrides.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Look for .env in the package's parent directory (project root)
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")
load_dotenv()  # also check cwd

# ---------------------------------------------------------------------------
# Load config.toml
# ---------------------------------------------------------------------------

_toml_path = Path(os.getenv("PROMPTCHAIN_CONFIG", str(_project_root / "config.toml")))
_cfg: dict = {}
if _toml_path.exists():
    with open(_toml_path, "rb") as f:
        _cfg = tomllib.load(f)

_engine = _cfg.get("engine", {})
_store = _cfg.get("store", {})
_server = _cfg.get("server", {})

# ---------------------------------------------------------------------------
# Provider API keys (env-only, never in toml)
# ---------------------------------------------------------------------------

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")

# Optional remote generation service (capability backend "http")
GENERATION_SERVICE_URL = os.getenv("PROMPTCHAIN_GENERATION_URL", _engine.get("generation_url", ""))
GENERATION_SERVICE_KEY = os.getenv("PROMPTCHAIN_GENERATION_KEY", "")
CAPABILITY_BACKEND = os.getenv("PROMPTCHAIN_BACKEND", _engine.get("backend", "provider"))  # provider | http | echo

# ---------------------------------------------------------------------------
# Engine defaults
# ---------------------------------------------------------------------------

DEFAULT_CAPABILITY = os.getenv(
    "PROMPTCHAIN_CAPABILITY", _engine.get("capability", "anthropic/claude-sonnet-4-5")
)
QUEUE_CONCURRENCY = int(os.getenv("PROMPTCHAIN_CONCURRENCY", _engine.get("concurrency", 3)))
TRANSPORT_MAX_ATTEMPTS = int(os.getenv("PROMPTCHAIN_TRANSPORT_ATTEMPTS", _engine.get("transport_attempts", 3)))
TRANSPORT_BACKOFF_BASE = float(os.getenv("PROMPTCHAIN_BACKOFF_BASE", _engine.get("backoff_base", 1.0)))
TRANSPORT_MAX_BACKOFF = float(os.getenv("PROMPTCHAIN_MAX_BACKOFF", _engine.get("max_backoff", 30.0)))
DEFAULT_TIMEOUT = float(os.getenv("PROMPTCHAIN_TIMEOUT", _engine.get("timeout", 60.0)))
MAX_CORRECTION_ATTEMPTS = int(os.getenv("PROMPTCHAIN_MAX_ATTEMPTS", _engine.get("max_attempts", 3)))
DEFAULT_MAX_TOKENS = int(os.getenv("PROMPTCHAIN_MAX_TOKENS", _engine.get("max_tokens", 4096)))
DEFAULT_TEMPERATURE = float(os.getenv("PROMPTCHAIN_TEMPERATURE", _engine.get("temperature", 0.3)))

# Human interaction
HUMAN_RESPONSE_TIMEOUT = float(os.getenv("PROMPTCHAIN_HUMAN_TIMEOUT", _engine.get("human_timeout", 300)))

# ---------------------------------------------------------------------------
# Context store
# ---------------------------------------------------------------------------

CONTEXT_TTL = int(os.getenv("PROMPTCHAIN_CONTEXT_TTL", _store.get("ttl", 3600)))
STORE_PATH = os.getenv("PROMPTCHAIN_STORE_PATH", _store.get("path", ""))  # empty -> in-memory
EVENT_LOG = os.getenv("PROMPTCHAIN_EVENT_LOG", _store.get("event_log", ""))

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

SERVER_HOST = os.getenv("PROMPTCHAIN_HOST", _server.get("host", "0.0.0.0"))
SERVER_PORT = int(os.getenv("PROMPTCHAIN_PORT", _server.get("port", 8000)))


@dataclass
class EngineConfig:
    """Per-orchestrator snapshot of the engine settings."""

    default_capability: str = DEFAULT_CAPABILITY
    concurrency: int = QUEUE_CONCURRENCY
    transport_attempts: int = TRANSPORT_MAX_ATTEMPTS
    backoff_base: float = TRANSPORT_BACKOFF_BASE
    max_backoff: float = TRANSPORT_MAX_BACKOFF
    timeout: float = DEFAULT_TIMEOUT
    max_attempts: int = MAX_CORRECTION_ATTEMPTS
    human_timeout: float = HUMAN_RESPONSE_TIMEOUT
    context_ttl: int = CONTEXT_TTL
