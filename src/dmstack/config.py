"""Stack configuration.

StackConfig is immutable. Tunables are changed by building a new config
(`with_tunables`) which the stack picks up on its next top-level activation.

Example:
    ```python
    cfg = StackConfig(cache_size=meg(16))
    no_migrate = cfg.with_tunables(segment_size_order=9, enable_migration_modulator=0, allow_migrate=0)
    ```
"""

from __future__ import annotations

from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dmstack import constants, units

_KNOWN_ARGS = frozenset(constants.WRITEBOOST_TUNABLES + constants.WRITEBOOST_TABLE_ONLY_ARGS)


class StackConfig(BaseModel):
    """Sizing and tunables for one stack.

    Attributes:
        backing_size: Sectors of the slow device used as backing store.
            None uses the whole device.
        cache_size: Sectors of the fast device used as cache. Default: 1 GiB.
        tunables: Writeboost arguments, serialized into the table in
            insertion order.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    backing_size: int | None = Field(default=None, gt=0)
    cache_size: int = Field(default=units.gig(1), gt=0)
    tunables: dict[str, int] = Field(default_factory=dict)

    @field_validator("tunables")
    @classmethod
    def _known_tunables(cls, v: dict[str, int]) -> dict[str, int]:
        unknown = sorted(set(v) - _KNOWN_ARGS)
        if unknown:
            raise ValueError(f"Unknown writeboost arguments: {', '.join(unknown)}")
        return v

    def with_tunables(self, **tunables: int) -> Self:
        """New config with `tunables` merged over the current ones."""
        return type(self).model_validate(
            {
                "backing_size": self.backing_size,
                "cache_size": self.cache_size,
                "tunables": {**self.tunables, **tunables},
            }
        )

    def replace_tunables(self, **tunables: int) -> Self:
        """New config whose tunables are exactly `tunables`."""
        return type(self).model_validate(
            {"backing_size": self.backing_size, "cache_size": self.cache_size, "tunables": tunables}
        )
