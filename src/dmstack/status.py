"""Writeboost status records.

`dmsetup status` for a writeboost device prints, after the usual
`<start> <length> writeboost` prefix:

    <cursor pos> <nr cache blocks> <nr segments>
    <current id> <last flushed id> <last writeback id>
    <nr dirty cache blocks>
    <16 stat counters, indexed by (write, hit, on buffer, fullsize)>
    <nr partial flushed>
    <#tunable words> <k1> <v1> <k2> <v2> ...
"""

from __future__ import annotations

from typing import Self

from pydantic import BaseModel, ConfigDict, Field

from dmstack import constants
from dmstack.exceptions import StatusParseError

_FIXED_FIELDS = 7
_MIN_WORDS = _FIXED_FIELDS + constants.STAT_COUNTERS + 1


class WriteboostStatus(BaseModel):
    """Parsed writeboost status line."""

    model_config = ConfigDict(frozen=True)

    cursor_pos: int
    nr_cache_blocks: int
    nr_segments: int
    current_id: int
    last_flushed_id: int
    last_writeback_id: int
    nr_dirty_cache_blocks: int
    stats: tuple[int, ...] = Field(min_length=constants.STAT_COUNTERS, max_length=constants.STAT_COUNTERS)
    nr_partial_flushed: int
    tunables: dict[str, int] = Field(default_factory=dict)

    @property
    def last_migrated_id(self) -> int:
        """Older writeboost releases called write-back "migration"."""
        return self.last_writeback_id

    def stat(self, write: bool | int, hit: bool | int, on_buffer: bool | int, fullsize: bool | int) -> int:
        i = (int(bool(write)) << 3) | (int(bool(hit)) << 2) | (int(bool(on_buffer)) << 1) | int(bool(fullsize))
        return self.stats[i]

    @classmethod
    def from_raw_status(cls, raw: str) -> Self:
        words = raw.split()
        if len(words) >= 3 and words[2] == constants.WRITEBOOST_TARGET:  # noqa: PLR2004
            words = words[3:]
        if len(words) < _MIN_WORDS:
            raise StatusParseError(
                f"Writeboost status too short ({len(words)} fields)",
                context={"raw": raw},
            )
        try:
            nums = [int(w) for w in words[:_MIN_WORDS]]
        except ValueError as e:
            raise StatusParseError(f"Non-numeric writeboost status field: {e}", context={"raw": raw}) from e

        tunables: dict[str, int] = {}
        rest = words[_MIN_WORDS:]
        if rest:
            try:
                count = int(rest[0])
                pairs = rest[1 : 1 + count]
                for k, v in zip(pairs[::2], pairs[1::2], strict=True):
                    tunables[k] = int(v)
            except ValueError as e:
                raise StatusParseError(f"Malformed writeboost tunables: {e}", context={"raw": raw}) from e

        stats_end = _FIXED_FIELDS + constants.STAT_COUNTERS
        return cls(
            cursor_pos=nums[0],
            nr_cache_blocks=nums[1],
            nr_segments=nums[2],
            current_id=nums[3],
            last_flushed_id=nums[4],
            last_writeback_id=nums[5],
            nr_dirty_cache_blocks=nums[6],
            stats=tuple(nums[_FIXED_FIELDS:stats_end]),
            nr_partial_flushed=nums[stats_end],
            tunables=tunables,
        )
