"""Engine configuration from ``settings`` blocks and caller overrides."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .errors import SchemaError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "terrik.state.json"


class EngineConfig(BaseModel):
    """Knobs for planning and applying."""

    model_config = {"extra": "forbid"}

    state: Path = Path(DEFAULT_STATE_FILE)
    parallelism: int = Field(default=10, ge=1)
    timeout: float | None = Field(default=None, gt=0)
    refresh: bool = False
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @classmethod
    def from_settings(cls, settings: dict[str, Any] | None = None, **overrides: Any) -> EngineConfig:
        """Merge document settings with overrides; None overrides are ignored."""
        data = dict(settings or {})
        retry = data.get("retry")
        if isinstance(retry, list):
            # nested blocks parse as a list of dicts
            data["retry"] = retry[0] if retry else {}
        data.update({k: v for k, v in overrides.items() if v is not None})
        try:
            config = cls.model_validate(data)
        except ValidationError as exc:
            raise SchemaError(f"Invalid settings: {exc}") from None
        logger.debug("Engine config: %s", config)
        return config

    def state_path(self, base_dir: str | Path) -> Path:
        """State file location; relative paths are taken from the document directory."""
        return self.state if self.state.is_absolute() else Path(base_dir) / self.state
