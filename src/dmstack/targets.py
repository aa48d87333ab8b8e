"""Layer and table value objects.

A Layer describes one device-mapper target line (kind, length, args); a
Table is the ordered list of layers that makes up one device's mapping.
Both are frozen: changing configuration means building a new value.

Wire form (what `dmsetup create/load --table` accepts), one line per layer:
    <start sector> <length sectors> <target kind> <args...>
"""

from __future__ import annotations

import os
import re
import stat
from collections.abc import Mapping
from typing import Self

from pydantic import BaseModel, ConfigDict, Field

from dmstack import constants

Arg = int | str
DeviceRef = str | os.PathLike[str]

_INT_RE = re.compile(r"^-?\d+$")


def _dev(ref: DeviceRef) -> str:
    """Device references are resolved to their path (identity, not ownership)."""
    return os.fspath(ref)


def device_number(path: DeviceRef) -> str:
    """`major:minor` of a block device, the form `dmsetup table` prints."""
    st = os.stat(path)
    if not stat.S_ISBLK(st.st_mode):
        msg = f"{os.fspath(path)} is not a block device"
        raise ValueError(msg)
    return f"{os.major(st.st_rdev)}:{os.minor(st.st_rdev)}"


class Layer(BaseModel):
    """One target line of a table."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str = Field(min_length=1)
    sector_count: int = Field(gt=0)
    args: tuple[Arg, ...] = ()

    def render_args(self) -> str:
        return " ".join(str(a) for a in self.args)


class Table(BaseModel):
    """Ordered composition of layers forming one device's mapping."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    layers: tuple[Layer, ...] = Field(min_length=1)

    @property
    def size(self) -> int:
        """Total length in sectors."""
        return sum(t.sector_count for t in self.layers)

    def wire(self) -> list[tuple[int, int, str, str]]:
        """(start, length, kind, params) tuples, starts laid end to end."""
        rows = []
        start = 0
        for t in self.layers:
            rows.append((start, t.sector_count, t.kind, t.render_args()))
            start += t.sector_count
        return rows

    def to_dmsetup(self) -> str:
        lines = []
        for start, length, kind, params in self.wire():
            line = f"{start} {length} {kind}"
            if params:
                line += f" {params}"
            lines.append(line)
        return "\n".join(lines) + "\n"

    @classmethod
    def parse(cls, text: str) -> Self:
        """Parse `dmsetup table` output back into a Table.

        Numeric arguments come back as ints. The kernel prints devices as
        `major:minor`, so compare against `by_device_number()` of a table
        built from paths.
        """
        layers = []
        for raw in text.strip().splitlines():
            words = raw.split()
            if len(words) < 3:  # noqa: PLR2004
                msg = f"Malformed table line: {raw!r}"
                raise ValueError(msg)
            args = tuple(int(w) if _INT_RE.match(w) else w for w in words[3:])
            layers.append(Layer(kind=words[2], sector_count=int(words[1]), args=args))
        return cls(layers=tuple(layers))

    def by_device_number(self) -> Self:
        """Same table with every `/dev/...` argument replaced by `major:minor`."""

        def resolve(a: Arg) -> Arg:
            return device_number(a) if isinstance(a, str) and a.startswith("/dev/") else a

        layers = tuple(t.model_copy(update={"args": tuple(resolve(a) for a in t.args)}) for t in self.layers)
        return type(self)(layers=layers)


# ============================================================================
# Construction helpers
# ============================================================================


def layer(kind: str, size: int, params: tuple[Arg, ...] | list[Arg] = ()) -> Layer:
    return Layer(kind=kind, sector_count=size, args=tuple(params))


def table(*layers: Layer) -> Table:
    return Table(layers=layers)


def encode_params(params: Mapping[str, Arg]) -> list[Arg]:
    """{k1: v1, k2: v2} -> [4, k1, v1, k2, v2].

    The leading count is the number of argument words that follow (two per
    key/value pair), which is how dm targets read their optional arguments.
    An empty mapping encodes to nothing at all.
    """
    if not params:
        return []
    words: list[Arg] = [len(params) * 2]
    for k, v in params.items():
        words += [k, v]
    return words


def linear_target(size: int, dev: DeviceRef, offset: int) -> Layer:
    return layer(constants.LINEAR_TARGET, size, (_dev(dev), offset))


def flakey_target(size: int, dev: DeviceRef, offset: int, up: int, down: int) -> Layer:
    return layer(constants.FLAKEY_TARGET, size, (_dev(dev), offset, up, down))


def error_target(size: int) -> Layer:
    return layer(constants.ERROR_TARGET, size)


def zero_target(size: int) -> Layer:
    return layer(constants.ZERO_TARGET, size)


def writeboost_target(
    size: int,
    backing: DeviceRef,
    cache: DeviceRef,
    tunables: Mapping[str, Arg] | None = None,
) -> Layer:
    """writeboost <backing> <cache> [<#args> <k> <v>...].

    The backing (slow) device is always the first positional argument.
    """
    args: list[Arg] = [_dev(backing), _dev(cache)]
    args += encode_params(tunables or {})
    return layer(constants.WRITEBOOST_TARGET, size, args)
