"""Runtime settings for lifecycle workflows."""

import re
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from cluster_lifecycle.exceptions import ConfigurationError

DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


class LifecycleSettings(BaseModel):
    """Retry limits and wait timeouts used by the workflows.

    Durations used locally are seconds. The ``*_wait`` strings are passed
    as-is to the cluster client, which forwards them to ``kubectl wait``.
    """

    max_retries: int = Field(default=30, ge=1)
    backoff_period: float = Field(default=5.0, ge=0)
    machine_max_wait: float = Field(default=600.0, ge=0)
    machine_backoff: float = Field(default=1.0, ge=0)
    machines_min_wait: float = Field(default=1800.0, ge=0)
    move_capi_wait: float = Field(default=300.0, ge=0)
    ctrl_plane_wait: str = "60m"
    etcd_wait: str = "60m"
    deployment_wait: str = "30m"
    log_dir: str = "logs"
    system_namespace: str = "eksa-system"
    ssm_poll_interval: float = Field(default=5.0, ge=0)
    ssm_timeout: float = Field(default=180 * 60.0, gt=0)

    @field_validator("ctrl_plane_wait", "etcd_wait", "deployment_wait")
    @classmethod
    def validate_wait(cls, v: str) -> str:
        """Validate wait strings look like kubectl durations."""
        parse_duration(v)
        return v

    @classmethod
    def load(cls, path: str | Path) -> "LifecycleSettings":
        """Load settings from a YAML file.

        Keys missing from the file keep their defaults.

        Raises:
            ConfigurationError: If the file can't be read or holds invalid values
        """
        import yaml

        path = Path(path)
        if not path.exists():
            raise ConfigurationError(
                f"Settings file not found: {path}",
                "Create the file or omit --config to use the defaults",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse settings file {path}", str(e))

        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file {path} must contain a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings in {path}", str(e))


def format_duration(seconds: float) -> str:
    """Render seconds as a kubectl timeout string, e.g. 300 -> 5m0s."""
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def parse_duration(value: str) -> float:
    """Parse a kubectl timeout string such as 1h30m or 90s into seconds.

    Raises:
        ValueError: If the string isn't a sequence of number-unit pairs
    """
    parts = DURATION_PART.findall(value)
    if not value or "".join(number + unit for number, unit in parts) != value:
        raise ValueError(f"'{value}' is not a duration such as 30m or 90s")
    return sum(float(number) * DURATION_UNITS[unit] for number, unit in parts)
