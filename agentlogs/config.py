"""agentlogs Configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    value = (os.getenv(name) or "").strip()
    if not value:
        return default
    return Path(value).expanduser()


PACKAGE_ROOT = Path(__file__).resolve().parent
SECRET_PATTERNS_PATH = PACKAGE_ROOT / "secret_patterns.yaml"

# Discovery
DISCOVERY_DEFAULT_LIMIT = _env_int("AGENTLOGS_DISCOVERY_LIMIT", 100)
PREVIEW_MAX_LENGTH = 80
HEAD_READ_SIZE = 50 * 1024
TAIL_READ_SIZE = 20 * 1024
CODEX_MAX_SCAN_DEPTH = 4

# OpenCode companion CLI
OPENCODE_BIN = os.getenv("AGENTLOGS_OPENCODE_BIN", "opencode")
OPENCODE_TIMEOUT_SECONDS = _env_int("AGENTLOGS_OPENCODE_TIMEOUT_SECONDS", 30)

# Pricing
PRICING_URL = os.getenv(
    "AGENTLOGS_PRICING_URL",
    "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json",
)
PRICING_OFFLINE = _env_bool("AGENTLOGS_PRICING_OFFLINE", False)
PRICING_TIMEOUT_SECONDS = _env_int("AGENTLOGS_PRICING_TIMEOUT_SECONDS", 10)


# Source roots are resolved per call so environment overrides apply without reimporting.
def claude_home() -> Path:
    return _env_path("CLAUDE_HOME", Path.home() / ".claude")


def codex_home() -> Path:
    return _env_path("CODEX_HOME", Path.home() / ".codex")


def cline_home() -> Path:
    return _env_path("CLINE_HOME", Path.home() / ".cline")


def pi_sessions_dir() -> Path:
    return _env_path("PI_SESSIONS", Path.home() / ".pi" / "agent" / "sessions")
