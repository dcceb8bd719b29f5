"""Run configuration for the reconciliation.

Parameters are fixed for the duration of a run. They are resolved from,
lowest to highest precedence:

1. built-in defaults (the window and codes of the original lot report);
2. ``[tool.lotrecon]`` in ``pyproject.toml`` of the working directory;
3. ``LOTRECON_*`` environment variables (a ``.env`` is loaded by the CLI);
4. explicit overrides (CLI options or keyword arguments).
"""

from __future__ import annotations

import datetime
import os
import tomllib
from dataclasses import asdict, dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

ENV_PREFIX = "LOTRECON_"

DEFAULT_START_DATE = datetime.date(2005, 7, 1)
DEFAULT_END_DATE = datetime.date(2013, 9, 30)
DEFAULT_EPSILON = Decimal("0.01")
DEFAULT_SERVICE_PREFIX = "WC"
DEFAULT_BILLING_CODE = "FLAT"


class ConfigError(ValueError):
    """Raised for invalid or unparseable configuration values."""


@dataclass(frozen=True)
class ReconConfig:
    """Parameters of one reconciliation run.

    Attributes:
        start_date: First day of the transaction window (inclusive).
        end_date: Last day of the transaction window (inclusive).
        epsilon: Tolerance under which billed and paid totals are equal.
        service_prefix: Only service codes starting with this are reconciled.
        billing_code: Bill-detail ``code`` marking the charges to reconcile.
        include_status: Emit total_billed, difference and status columns.
    """

    start_date: datetime.date = DEFAULT_START_DATE
    end_date: datetime.date = DEFAULT_END_DATE
    epsilon: Decimal = DEFAULT_EPSILON
    service_prefix: str = DEFAULT_SERVICE_PREFIX
    billing_code: str = DEFAULT_BILLING_CODE
    include_status: bool = False

    def __post_init__(self) -> None:
        if self.start_date > self.end_date:
            raise ConfigError(
                f"start_date {self.start_date} is after end_date {self.end_date}"
            )
        if not self.epsilon.is_finite():
            raise ConfigError(f"epsilon must be a finite number, got {self.epsilon}")
        if self.epsilon < 0:
            raise ConfigError(f"epsilon must be >= 0, got {self.epsilon}")
        if not self.service_prefix.strip():
            raise ConfigError("service_prefix must be a non-empty string")
        if not self.billing_code.strip():
            raise ConfigError("billing_code must be a non-empty string")

    def with_overrides(self, **overrides: Any) -> ReconConfig:
        """Return a copy with the non-None *overrides* parsed and applied."""
        parsed = {
            k: _parse_field(k, v) for k, v in overrides.items() if v is not None
        }
        return replace(self, **parsed)

    def to_row(self) -> dict[str, Any]:
        """One-row representation ingested as the ``params`` table."""
        return {
            "start_date": self.start_date,
            "end_date": self.end_date,
            "epsilon": str(self.epsilon),
            "service_prefix": self.service_prefix,
            "billing_code": self.billing_code,
            "include_status": self.include_status,
        }

    def to_meta(self) -> dict[str, Any]:
        """JSON-friendly form recorded in the workspace metadata."""
        meta = asdict(self)
        meta["start_date"] = self.start_date.isoformat()
        meta["end_date"] = self.end_date.isoformat()
        meta["epsilon"] = str(self.epsilon)
        return meta


_FIELD_NAMES = {f.name for f in fields(ReconConfig)}


def _parse_date(name: str, value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.date.fromisoformat(str(value).strip())
    except ValueError as e:
        raise ConfigError(f"{name}: expected YYYY-MM-DD, got {value!r}") from e


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"{name}: expected a boolean, got {value!r}")


def _parse_field(name: str, value: Any) -> Any:
    if name not in _FIELD_NAMES:
        raise ConfigError(
            f"Unknown setting '{name}'. Allowed: {', '.join(sorted(_FIELD_NAMES))}"
        )
    if name in ("start_date", "end_date"):
        return _parse_date(name, value)
    if name == "epsilon":
        try:
            # str() first so floats from TOML keep their short repr
            return Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ConfigError(f"epsilon: expected a number, got {value!r}") from e
    if name == "include_status":
        return _parse_bool(name, value)
    return str(value).strip()


def read_pyproject_settings(root: Path | None = None) -> dict[str, Any]:
    """Return the ``[tool.lotrecon]`` table of ``pyproject.toml`` (or {})."""
    pyproject_path = (root or Path.cwd()) / "pyproject.toml"
    if not pyproject_path.exists():
        return {}
    try:
        data = tomllib.loads(pyproject_path.read_text())
    except OSError as e:
        raise ConfigError(f"Failed to read {pyproject_path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {pyproject_path}: {e}") from e
    settings = data.get("tool", {}).get("lotrecon", {})
    if not isinstance(settings, dict):
        raise ConfigError(f"[tool.lotrecon] in {pyproject_path} must be a table")
    return settings


def read_env_settings(environ: dict[str, str] | None = None) -> dict[str, str]:
    """Return settings given as ``LOTRECON_<FIELD>`` environment variables."""
    env = os.environ if environ is None else environ
    out: dict[str, str] = {}
    for name in _FIELD_NAMES:
        value = env.get(ENV_PREFIX + name.upper())
        if value is not None and value.strip():
            out[name] = value
    return out


def load_config(
    root: Path | None = None,
    environ: dict[str, str] | None = None,
    **overrides: Any,
) -> ReconConfig:
    """Resolve the run configuration (defaults < pyproject < env < overrides)."""
    # Merge first so an intermediate layer cannot trip the window check
    settings: dict[str, Any] = {}
    settings.update(read_pyproject_settings(root))
    settings.update(read_env_settings(environ))
    settings.update({k: v for k, v in overrides.items() if v is not None})
    return ReconConfig().with_overrides(**settings)
