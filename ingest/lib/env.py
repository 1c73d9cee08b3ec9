"""Environment variable helpers for ingestion configuration.

Credentials and connection strings are kept out of config files:
``${FMP_API_KEY}`` style references are expanded from the process
environment, which may be seeded from a ``.env`` file via python-dotenv.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

from ingest.lib.constants import DEFAULT_STATE_DIR

__all__ = [
    "API_KEY_ENV",
    "SINK_DSN_ENV",
    "STATE_DIR_ENV",
    "expand_env_vars",
    "expand_value",
    "load_env_file",
    "resolve_state_dir",
]

API_KEY_ENV = "FMP_API_KEY"
SINK_DSN_ENV = "INGEST_SINK_DSN"
STATE_DIR_ENV = "INGEST_STATE_DIR"

# ${VAR_NAME} or $VAR_NAME
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load a .env file into the process environment.

    Returns True if a file was found and loaded.
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Expand ${VAR} and $VAR references in a string.

    Unset variables are left as written unless ``strict`` is True, in which
    case a KeyError is raised.

    Example:
        >>> os.environ["FMP_API_KEY"] = "demo"
        >>> expand_env_vars("${FMP_API_KEY}")
        'demo'
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        env_value = os.environ.get(var_name)
        if env_value is None:
            if strict:
                raise KeyError(f"Environment variable not set: {var_name}")
            return str(match.group(0))
        return env_value

    return ENV_VAR_PATTERN.sub(replacer, value)


def expand_value(value: Any, *, strict: bool = False) -> Any:
    """Recursively expand env references in strings, dicts and lists."""
    if isinstance(value, str):
        return expand_env_vars(value, strict=strict)
    if isinstance(value, dict):
        expanded: Dict[str, Any] = {}
        for key, item in value.items():
            expanded[key] = expand_value(item, strict=strict)
        return expanded
    if isinstance(value, list):
        items: List[Any] = [expand_value(item, strict=strict) for item in value]
        return items
    return value


def resolve_state_dir(configured: Optional[Union[str, Path]] = None) -> Path:
    """Directory holding durable state (failed jobs, daily usage, run log).

    Precedence: explicit value, then INGEST_STATE_DIR, then ``.state``.
    """
    if configured:
        return Path(configured)
    return Path(os.environ.get(STATE_DIR_ENV, DEFAULT_STATE_DIR))
