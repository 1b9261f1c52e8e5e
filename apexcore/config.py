"""
Configuration

Tunables for the loop, the admission gate and the orchestrator.
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .retry import RetryPolicy


ENV_PREFIX = "APEX_"


class ApexConfig(BaseModel):
    """
    Runtime settings for apex-core.

    Example:
        config = ApexConfig(max_workers=4, task_deadline=60)
        config = ApexConfig.from_env()  # APEX_MAX_WORKERS=4 APEX_TASK_DEADLINE=60
    """
    max_workers: int = Field(default=8, ge=1, description="Concurrent in-flight tasks")
    poll_interval: float = Field(default=0.05, gt=0, description="Seconds between slot acquisition retries")
    max_wait: float = Field(default=30.0, ge=0, description="Seconds a sub-task may wait for a slot")
    retry_base_delay: float = Field(default=0.25, ge=0)
    retry_max_delay: float = Field(default=4.0, ge=0)
    task_deadline: Optional[float] = Field(default=None, gt=0, description="Wall-clock budget per task, unbounded if None")
    max_subtasks: int = Field(default=12, ge=1, description="Upper bound on a decomposed plan")
    max_log_entries: Optional[int] = Field(default=None, ge=1, description="Blackboard log retention, unbounded if None")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(base_delay=self.retry_base_delay, max_delay=self.retry_max_delay)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ApexConfig":
        """
        Build a config from `APEX_*` environment variables.

        Raises:
            ConfigError: If a variable cannot be parsed
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None or raw == "":
                continue
            values[name] = None if raw.lower() in ("none", "null") else raw

        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(f"Invalid {ENV_PREFIX}* environment configuration: {e}") from e
