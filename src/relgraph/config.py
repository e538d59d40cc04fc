"""Engine configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class EngineConfig(BaseModel):
    """Tunables shared by the planners, the compiler and the repository."""

    model_config = ConfigDict(frozen=True)

    # None = detect from the dialect (``dialect.insert_returning``)
    use_returning: bool | None = None

    max_payload_depth: int = Field(default=32, ge=1)

    # Unmatched eager-filter keys are ignored unless this is set.
    strict_eager_filters: bool = False

    correlation_label: str = Field(default="_rg_owner", pattern=r"^[A-Za-z_]\w*$")


DEFAULT_CONFIG = EngineConfig()
