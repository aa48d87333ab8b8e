"""Shared pytest fixtures for dmstack tests."""

import asyncio
import os
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from dmstack.config import StackConfig
from dmstack.process import ProcessResult
from dmstack.settings import Settings
from dmstack.stack import WriteboostStack, WriteboostStackCaching
from dmstack.system_probes import check_root, check_target_available
from dmstack.units import gig
from tests.fakes import FakeControlPlane

SLOW_DEV = "/dev/fake-slow"
FAST_DEV = "/dev/fake-fast"
SLOW_DEV_SIZE = gig(8)
FAST_DEV_SIZE = gig(2)

# ============================================================================
# Shared Skip Markers
# ============================================================================

_devices_configured = bool(os.environ.get("DMSTACK_DATA_DEV") and os.environ.get("DMSTACK_METADATA_DEV"))

# End-to-end scenarios need root, two scratch block devices and the writeboost
# module. Everything on those devices is destroyed.
skip_unless_devices = pytest.mark.skipif(
    not (_devices_configured and check_root()),
    reason="Requires root and DMSTACK_DATA_DEV / DMSTACK_METADATA_DEV scratch devices",
)

skip_unless_writeboost = pytest.mark.skipif(
    not (check_root() and asyncio.run(check_target_available("writeboost"))),
    reason="Requires the dm-writeboost target (modprobe dm-writeboost)",
)

# ============================================================================
# Control Plane / Settings Fixtures
# ============================================================================


@pytest.fixture
def control() -> FakeControlPlane:
    """In-memory control plane; inspect control.ops for call order."""
    return FakeControlPlane()


@pytest.fixture
def unit_settings() -> Settings:
    """Settings for unit tests: fake devices, no pacing."""
    return Settings(data_dev=SLOW_DEV, metadata_dev=FAST_DEV, pace_seconds=0)


@pytest.fixture
def make_test_stack(control: FakeControlPlane) -> Callable[..., WriteboostStack]:
    """Factory for stacks over the fake control plane.

    Usage:
        def test_something(make_test_stack):
            stack = make_test_stack(config=StackConfig(cache_size=meg(16)))
    """

    def _make(
        maker: Callable[..., WriteboostStack] = WriteboostStackCaching,
        config: StackConfig | None = None,
        **overrides: Any,
    ) -> WriteboostStack:
        kwargs: dict[str, Any] = {
            "slow_dev_size": SLOW_DEV_SIZE,
            "fast_dev_size": FAST_DEV_SIZE,
            "pace_seconds": 0,
        }
        kwargs.update(overrides)
        return maker(control, SLOW_DEV, FAST_DEV, config=config, **kwargs)

    return _make


@pytest.fixture
def stack(make_test_stack: Callable[..., WriteboostStack]) -> WriteboostStack:
    """Caching stack with default config."""
    return make_test_stack()


@pytest.fixture
def wipe_cache_mock():
    """Replace the dd that wipes the cache device (no real device behind the fake)."""
    ok = ProcessResult(command="dd", exit_status=0)
    with patch("dmstack.stack.run", new=AsyncMock(return_value=ok)) as m:
        yield m
