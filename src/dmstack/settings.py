"""Runtime configuration from environment variables."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from dmstack import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with DMSTACK_ prefix.
    Example: DMSTACK_DATA_DEV=/dev/sdb DMSTACK_METADATA_DEV=/dev/nvme0n1p1
    """

    model_config = SettingsConfigDict(
        env_prefix="DMSTACK_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Devices under test: data_dev is the slow (backing) device,
    # metadata_dev the fast one the cache lives on
    data_dev: str | None = None
    metadata_dev: str | None = None

    # Which StackMaker builds the stack ("caching" = writeboost, "backing" = plain linear)
    stack_type: Literal["caching", "backing"] = "caching"

    # Tools
    dmsetup_bin: Path = Path("/usr/sbin/dmsetup")
    fio_bin: str = "fio"
    smallfile_cli: Path = Field(default_factory=lambda: Path.home() / "smallfile" / "smallfile_cli.py")

    # Pacing / timeouts
    pace_seconds: float = Field(default=constants.DEFAULT_PACE_SECONDS, ge=0)
    command_timeout_seconds: float = Field(default=constants.DEFAULT_COMMAND_TIMEOUT_SECONDS, gt=0)
    drain_timeout_seconds: float = Field(default=constants.DEFAULT_DRAIN_TIMEOUT_SECONDS, gt=0)
    unmap_retries: int = Field(default=constants.UNMAP_MAX_RETRIES, ge=1)

    # Filesystem scenarios
    filesystem: Literal["xfs", "ext4"] = "xfs"
    mount_dir: Path = Path("./mnt_wb")
