"""
Quarry Environment Access
=========================

.env loading and typed environment lookups used by DatabaseConfig.from_env.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Dict, MutableMapping, Optional, Union


_VARIABLE = re.compile(r"\$\{([^}]+)\}|\$(\w+)")

_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off", "")


class Env:
    """
    Environment variable reader.

    Reads a .env file into the given environment (``os.environ`` by
    default) and provides typed access with defaults.

    Example:
        env = Env().load()
        url = env.str("DATABASE_URL")
        pool_max = env.int("DB_POOL_MAX", default=10)
        log_queries = env.bool("DB_LOG_QUERIES", default=False)

        # Isolated from the process environment
        env = Env(environ={"DB_DRIVER": "sqlite", "DB_DATABASE": ":memory:"})
    """

    def __init__(
        self,
        env_file: Optional[Union[str, Path]] = None,
        override: bool = False,
        environ: Optional[MutableMapping[str, str]] = None,
    ):
        self._env_file = Path(env_file) if env_file else None
        self._override = override
        self._environ = environ if environ is not None else os.environ
        self._file_values: Dict[str, str] = {}

    def load(self, env_file: Optional[Union[str, Path]] = None) -> Env:
        """
        Load variables from a .env file, if one exists.

        Without an explicit path, looks for ``.env`` and then
        ``.env.<APP_ENV>`` in the working directory and up to three
        parents. Existing variables win unless override is set.

        Returns:
            Self for chaining
        """
        path = Path(env_file) if env_file else self._env_file or self._find_env_file()

        if path is not None and path.exists():
            self._load_file(path)
        return self

    def _find_env_file(self) -> Optional[Path]:
        cwd = Path.cwd()
        app_env = self._environ.get("APP_ENV", "development")

        for directory in [cwd] + list(cwd.parents)[:3]:
            for name in (".env", f".env.{app_env}"):
                candidate = directory / name
                if candidate.exists():
                    return candidate
        return None

    def _load_file(self, path: Path) -> None:
        for line in path.read_text().splitlines():
            line = line.strip()

            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[7:]
            if "=" not in line:
                continue

            key, _, value = line.partition("=")
            key = key.strip()
            value = self._unquote(value.strip())

            self._file_values[key] = value
            if self._override or key not in self._environ:
                self._environ[key] = value

    def _unquote(self, value: str) -> str:
        if len(value) >= 2 and value[0] == value[-1] == "'":
            # Single quotes are literal
            return value[1:-1]
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1].encode().decode("unicode_escape")
        return self._expand(value)

    def _expand(self, value: str) -> str:
        """Expand ${VAR} and $VAR references."""
        def replace(match: re.Match) -> str:
            name = match.group(1) or match.group(2)
            return self._environ.get(name, self._file_values.get(name, ""))

        return _VARIABLE.sub(replace, value)

    def get(self, key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
        """
        Get a raw value.

        Raises:
            KeyError: required and not set
        """
        value = self._environ.get(key, self._file_values.get(key, default))

        if value is None and required:
            raise KeyError(f"Required environment variable '{key}' is not set")
        return value

    def str(self, key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
        return self.get(key, default, required)

    def int(self, key: str, default: Optional[int] = None, required: bool = False) -> Optional[int]:
        value = self.get(key, required=required)
        if value is None or value == "":
            return default

        try:
            return int(value)
        except ValueError:
            raise ValueError(f"Environment variable '{key}' is not a valid integer: {value!r}")

    def bool(self, key: str, default: Optional[bool] = None, required: bool = False) -> Optional[bool]:
        value = self.get(key, required=required)
        if value is None:
            return default

        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"Environment variable '{key}' is not a valid boolean: {value!r}")

    def __contains__(self, key: str) -> bool:
        return key in self._environ or key in self._file_values
