"""Configuration loading for the EpicMe server.

Settings come from an optional ``.toml`` or ``.json`` file in the project
root, followed by a small set of environment overrides (secrets and
per-process values that should not live in a checked-in file).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

# Python 3.11+ has tomllib in stdlib; fall back to tomli for older versions
try:
    import tomllib  # Python 3.11+
except ImportError:
    try:
        import tomli as tomllib  # Python <3.11
    except ImportError:  # pragma: no cover
        tomllib = None

from .totp import SUPPORTED_ALGORITHMS


EMAIL_BACKENDS = ("outbox", "resend")
LOGGING_LEVELS = (
    "debug", "info", "notice", "warning", "error", "critical", "alert", "emergency",
)


@dataclass
class ServerConfig:
    """Configuration for an EpicMe server instance."""

    # Project identification
    project_name: str = "EpicMe"
    project_root: Path = field(default_factory=Path.cwd)

    # Storage (relative to project_root)
    data_dir: str = ".epicme"
    database: str = "epicme.db"

    # Email delivery
    email_backend: str = "outbox"
    email_from: str = "EpicMe <no-reply@epicme.dev>"
    outbox_dir: str = "outbox"
    resend_api_key: Optional[str] = None

    # One-time validation codes
    totp_period: int = 30
    totp_digits: int = 6
    totp_algorithm: str = "sha512"
    token_ttl: Optional[int] = None  # seconds; defaults to totp_period

    # Tag suggestions
    confidence_threshold: float = 0.7
    max_suggestions: int = 5
    sampling_max_tokens: int = 100

    # Protocol behaviour
    logging_level: str = "info"
    dynamic_capabilities: bool = False  # toggle tool/prompt lists on auth changes

    # Grant bound to this process (stdio transport serves a single session)
    grant_id: Optional[str] = None

    def get_data_path(self) -> Path:
        return self.project_root / self.data_dir

    def get_database_path(self) -> Path:
        return self.get_data_path() / self.database

    def get_outbox_path(self) -> Path:
        return self.get_data_path() / self.outbox_dir

    def get_token_ttl(self) -> int:
        return self.token_ttl if self.token_ttl is not None else self.totp_period


def load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file."""
    if tomllib is None:
        raise ImportError("tomli required for TOML config: pip install tomli")
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_json_config(path: Path) -> dict[str, Any]:
    """Load configuration from JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def dict_to_config(data: dict[str, Any], project_root: Path) -> ServerConfig:
    """Convert dictionary to ServerConfig."""
    config = ServerConfig(project_root=project_root)

    if "project" in data:
        proj = data["project"]
        if "name" in proj:
            config.project_name = proj["name"]

    if "storage" in data:
        storage = data["storage"]
        if "data_dir" in storage:
            config.data_dir = storage["data_dir"]
        if "database" in storage:
            config.database = storage["database"]

    if "email" in data:
        email = data["email"]
        if "backend" in email:
            config.email_backend = email["backend"]
        if "from" in email:
            config.email_from = email["from"]
        if "outbox" in email:
            config.outbox_dir = email["outbox"]
        if "resend_api_key" in email:
            config.resend_api_key = email["resend_api_key"]

    if "auth" in data:
        auth = data["auth"]
        if "period" in auth:
            config.totp_period = int(auth["period"])
        if "digits" in auth:
            config.totp_digits = int(auth["digits"])
        if "algorithm" in auth:
            config.totp_algorithm = auth["algorithm"].lower()
        if "token_ttl" in auth:
            config.token_ttl = int(auth["token_ttl"])

    if "suggestions" in data:
        sugg = data["suggestions"]
        if "confidence_threshold" in sugg:
            config.confidence_threshold = float(sugg["confidence_threshold"])
        if "max_suggestions" in sugg:
            config.max_suggestions = int(sugg["max_suggestions"])
        if "max_tokens" in sugg:
            config.sampling_max_tokens = int(sugg["max_tokens"])

    if "server" in data:
        server = data["server"]
        if "logging_level" in server:
            config.logging_level = server["logging_level"]
        if "dynamic_capabilities" in server:
            config.dynamic_capabilities = bool(server["dynamic_capabilities"])

    validate_config(config)
    return config


def validate_config(config: ServerConfig) -> None:
    """Reject settings the server cannot run with."""
    if config.email_backend not in EMAIL_BACKENDS:
        raise ValueError(
            f"Unsupported email backend: {config.email_backend} "
            f"(expected one of {', '.join(EMAIL_BACKENDS)})"
        )
    if config.logging_level not in LOGGING_LEVELS:
        raise ValueError(f"Unsupported logging level: {config.logging_level}")
    if not 0.0 <= config.confidence_threshold <= 1.0:
        raise ValueError("confidence_threshold must be between 0 and 1")
    if config.totp_period <= 0:
        raise ValueError("auth.period must be positive")
    if config.totp_digits < 1:
        raise ValueError("auth.digits must be at least 1")
    if config.totp_algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(
            f"Unsupported auth.algorithm: {config.totp_algorithm} "
            f"(expected one of {', '.join(SUPPORTED_ALGORITHMS)})"
        )
    if config.token_ttl is not None and config.token_ttl <= 0:
        raise ValueError("auth.token_ttl must be positive")


def apply_env_overrides(config: ServerConfig, environ: Optional[dict[str, str]] = None) -> ServerConfig:
    """Apply environment variable overrides in place and return the config."""
    env = os.environ if environ is None else environ

    if env.get("RESEND_API_KEY"):
        config.resend_api_key = env["RESEND_API_KEY"]
    if env.get("EPICME_EMAIL_BACKEND"):
        config.email_backend = env["EPICME_EMAIL_BACKEND"]
    if env.get("EPICME_GRANT_ID"):
        config.grant_id = env["EPICME_GRANT_ID"]

    validate_config(config)
    return config


def find_config_file(project_root: Path) -> Optional[Path]:
    """Find configuration file in project root.

    Search order:
    1. epicme_config.toml
    2. epicme_config.json
    3. .epicme.toml
    4. .epicme.json
    """
    candidates = [
        "epicme_config.toml",
        "epicme_config.json",
        ".epicme.toml",
        ".epicme.json",
    ]

    for name in candidates:
        path = project_root / name
        if path.exists():
            return path

    return None


def load_config(
    project_root: Path,
    config_path: Optional[Path] = None,
    environ: Optional[dict[str, str]] = None,
) -> ServerConfig:
    """Load server configuration.

    Args:
        project_root: Root directory holding the data directory
        config_path: Optional explicit path to config file
        environ: Environment mapping (defaults to os.environ)

    Returns:
        ServerConfig instance
    """
    if config_path is None:
        config_path = find_config_file(project_root)

    if config_path is None:
        config = ServerConfig(project_root=project_root)
        return apply_env_overrides(config, environ)

    suffix = config_path.suffix.lower()

    if suffix == ".toml":
        config_dict = load_toml_config(config_path)
    elif suffix == ".json":
        config_dict = load_json_config(config_path)
    else:
        raise ValueError(f"Unsupported config file type: {suffix}")

    return apply_env_overrides(dict_to_config(config_dict, project_root), environ)
