from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_ORACLE_MODEL = "tngtech/deepseek-r1t2-chimera:free"
DEFAULT_ORACLE_BASE_URL = "https://openrouter.ai/api/v1"
ORACLE_OUTPUT_METHODS = frozenset({"json_mode", "json_schema", "function_calling"})

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class DesignerSettings:
    """Server settings loaded from environment with fail-fast validation."""

    state_root: str = "state_store"
    oracle_model: str = DEFAULT_ORACLE_MODEL
    oracle_base_url: str = DEFAULT_ORACLE_BASE_URL
    oracle_timeout_seconds: float = 120.0
    oracle_max_retries: int = 0
    oracle_temperature: float = 0.7
    oracle_max_tokens: int = 4_000
    oracle_output_method: str = "json_mode"
    context_window: int = 0
    expand_brief: bool = True

    @classmethod
    def from_env(cls) -> "DesignerSettings":
        return cls(
            state_root=os.getenv("DESIGNER_STATE_ROOT", "state_store"),
            oracle_model=os.getenv("DESIGNER_ORACLE_MODEL", DEFAULT_ORACLE_MODEL),
            oracle_base_url=os.getenv("DESIGNER_ORACLE_BASE_URL", DEFAULT_ORACLE_BASE_URL),
            oracle_timeout_seconds=_get_env_float("DESIGNER_ORACLE_TIMEOUT_SECONDS", default=120.0, minimum=1.0),
            oracle_max_retries=_get_env_int("DESIGNER_ORACLE_MAX_RETRIES", default=0, minimum=0, maximum=10),
            oracle_temperature=_get_env_float("DESIGNER_ORACLE_TEMPERATURE", default=0.7, minimum=0.0, maximum=2.0),
            oracle_max_tokens=_get_env_int("DESIGNER_ORACLE_MAX_TOKENS", default=4_000, minimum=256),
            oracle_output_method=os.getenv("DESIGNER_ORACLE_OUTPUT_METHOD", "json_mode"),
            context_window=_get_env_int("DESIGNER_CONTEXT_WINDOW", default=0, minimum=0),
            expand_brief=_get_env_bool("DESIGNER_EXPAND_BRIEF", default=True),
        ).normalized()

    def normalized(self) -> "DesignerSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        state_root = self.state_root.strip()
        if not state_root:
            raise ValueError("DESIGNER_STATE_ROOT must be non-empty")
        oracle_model = self.oracle_model.strip()
        if not oracle_model:
            raise ValueError("DESIGNER_ORACLE_MODEL must be non-empty")
        oracle_base_url = self.oracle_base_url.strip().rstrip("/")
        if not oracle_base_url.startswith(("http://", "https://")):
            raise ValueError(f"DESIGNER_ORACLE_BASE_URL must be an http(s) URL, got: {self.oracle_base_url!r}")

        output_method = self.oracle_output_method.strip().lower()
        if output_method not in ORACLE_OUTPUT_METHODS:
            raise ValueError(
                "DESIGNER_ORACLE_OUTPUT_METHOD must be one of: " + ", ".join(sorted(ORACLE_OUTPUT_METHODS))
            )
        if self.oracle_timeout_seconds <= 0:
            raise ValueError(f"DESIGNER_ORACLE_TIMEOUT_SECONDS must be > 0, got: {self.oracle_timeout_seconds}")
        if self.context_window < 0:
            raise ValueError(f"DESIGNER_CONTEXT_WINDOW must be >= 0, got: {self.context_window}")
        return DesignerSettings(
            state_root=state_root,
            oracle_model=oracle_model,
            oracle_base_url=oracle_base_url,
            oracle_timeout_seconds=self.oracle_timeout_seconds,
            oracle_max_retries=self.oracle_max_retries,
            oracle_temperature=self.oracle_temperature,
            oracle_max_tokens=self.oracle_max_tokens,
            oracle_output_method=output_method,
            context_window=self.context_window,
            expand_brief=self.expand_brief,
        )

    def state_root_path(self, base: Path | None = None) -> Path:
        path = Path(self.state_root)
        if path.is_absolute():
            return path
        return (base if base is not None else Path.cwd()) / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Read an integer in [minimum, maximum]; the ValueError names the variable."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 86_400.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")
