"""Engine settings.

Defaults live on :class:`Settings`. ``[tool.recon]`` in the working
directory's ``pyproject.toml`` overrides them, and ``RECON_<FIELD>``
environment variables override that:

    [tool.recon]
    amount_band = 5.0
    date_window_days = 5
    llm_model = "google/gemini-3-flash-preview"

    RECON_MIN_CONFIDENCE=0.6 recon run ...
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import ValidationError
from .models import MatchingRules

ENV_PREFIX = "RECON_"


@dataclass(frozen=True)
class Settings:
    exact_epsilon: float = 0.01
    amount_band: float = 1.00
    date_window_days: int = 3
    min_confidence: float = 0.5
    sample_rows: int = 25
    max_rows: int = 50_000
    match_deadline_seconds: float = 30.0
    llm_model: str = "google/gemini-3-flash-preview"

    def default_rules(self) -> MatchingRules:
        """Matching rules a config starts from when it sets none."""
        return MatchingRules(
            exact_epsilon=self.exact_epsilon,
            amount_band=self.amount_band,
            date_window_days=self.date_window_days,
            min_confidence=self.min_confidence,
        )


def _convert(name: str, raw: Any, target: type, source: str) -> Any:
    if target is str:
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError(f"{source} '{name}' must be a non-empty string")
        return raw.strip()
    try:
        if isinstance(raw, bool):
            raise ValueError(raw)
        value = target(raw)
    except (TypeError, ValueError):
        raise ValidationError(
            f"{source} '{name}' must be {'an integer' if target is int else 'a number'}, got {raw!r}"
        ) from None
    if target is int and isinstance(raw, float) and not raw.is_integer():
        raise ValidationError(f"{source} '{name}' must be an integer, got {raw!r}")
    if value < 0:
        raise ValidationError(f"{source} '{name}' must not be negative")
    return value


_TYPES = {"float": float, "int": int, "str": str}


def _apply(settings: Settings, values: Mapping[str, Any], source: str) -> Settings:
    known = {f.name: _TYPES[f.type] if isinstance(f.type, str) else f.type for f in fields(Settings)}
    unknown = set(values) - set(known)
    if unknown:
        raise ValidationError(
            f"{source} has unknown settings: {', '.join(sorted(unknown))}. "
            f"Allowed: {', '.join(sorted(known))}"
        )
    updates = {name: _convert(name, raw, known[name], source) for name, raw in values.items()}
    if updates.get("min_confidence", 0) > 1:
        raise ValidationError(f"{source} 'min_confidence' must be between 0 and 1")
    return replace(settings, **updates)


def read_pyproject_settings(path: Path) -> dict[str, Any]:
    """Return the ``[tool.recon]`` table of a pyproject file, or {}."""
    if not path.exists():
        return {}
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as e:
        raise ValidationError(f"Invalid TOML in {path}: {e}") from e
    table = data.get("tool", {}).get("recon", {})
    if not isinstance(table, dict):
        raise ValidationError(f"[tool.recon] in {path} must be a table")
    return table


def load_settings(
    pyproject: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from defaults, ``[tool.recon]`` and ``RECON_*`` variables."""
    pyproject = pyproject if pyproject is not None else Path.cwd() / "pyproject.toml"
    environ = environ if environ is not None else os.environ

    settings = _apply(Settings(), read_pyproject_settings(pyproject), f"[tool.recon] in {pyproject}")
    field_names = {f.name for f in fields(Settings)}
    env_values = {
        key[len(ENV_PREFIX):].lower(): value
        for key, value in environ.items()
        if key.startswith(ENV_PREFIX) and key[len(ENV_PREFIX):].lower() in field_names
    }
    return _apply(settings, env_values, "environment")
