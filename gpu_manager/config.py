import logging

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GPU_MANAGER_",
        extra="ignore",
    )

    # Persisted state
    last_boot_file: str = Field(default="/var/lib/ubuntu-drivers-common/last_gfx_boot")
    new_boot_file: str | None = Field(default=None)  # defaults to last_boot_file
    offloading_conf: str = Field(default="/var/lib/ubuntu-drivers-common/requires_offloading")
    prime_settings: str = Field(default="/etc/prime-discrete")

    # Where u-d-c-* marker files of disabled cards/unloaded drivers live
    gpu_detection_path: str = Field(default="/run")

    # Display server configuration
    xorg_conf_d_path: str = Field(default="/usr/share/X11/xorg.conf.d")
    multiarch: str | None = Field(default=None)  # queried from dpkg-architecture if unset

    # Kernel modules and vendor helpers
    modprobe_d_path: str = Field(default="/etc/modprobe.d")
    amdgpu_pro_px_file: str = Field(default="/opt/amdgpu-pro/bin/amdgpu-pro-px")
    kernel_modules_path: str = Field(default="/lib/modules")

    # Kernel interfaces
    proc_modules_path: str = Field(default="/proc/modules")
    proc_cmdline_path: str = Field(default="/proc/cmdline")
    sysfs_pci_path: str = Field(default="/sys/bus/pci/devices")
    sysfs_drm_path: str = Field(default="/sys/class/drm")

    log_file: str | None = Field(default=None)  # stdout if unset
    backup_log: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text")  # "text" or "json"

    dry_run: bool = Field(default=False)

    # Test fixtures: a fake lspci file replaces live enumeration and the
    # fake flags below replace the matching probes
    fake_lspci_file: str | None = Field(default=None)
    fake_requires_offloading: bool = Field(default=False)
    fake_module_available: bool = Field(default=False)
    fake_module_versioned: bool = Field(default=False)

    @property
    def boot_file_to_write(self) -> str:
        return self.new_boot_file or self.last_boot_file

    @model_validator(mode="before")
    @classmethod
    def parse_log_level(cls, values: dict) -> dict:
        log_level = values.get("log_level")
        if log_level is None:
            return values
        if isinstance(log_level, str) and log_level.isdigit():
            log_level = int(log_level)
        if isinstance(log_level, int):
            for level, name in logging._levelToName.items():
                if level == log_level:
                    values["log_level"] = name
                    break
        return values

    @model_validator(mode="after")
    def validate_paths(self) -> "Settings":
        """Validate that every configured path is absolute."""
        path_fields = {
            "last_boot_file": self.last_boot_file,
            "new_boot_file": self.new_boot_file,
            "offloading_conf": self.offloading_conf,
            "prime_settings": self.prime_settings,
            "gpu_detection_path": self.gpu_detection_path,
            "xorg_conf_d_path": self.xorg_conf_d_path,
            "modprobe_d_path": self.modprobe_d_path,
            "amdgpu_pro_px_file": self.amdgpu_pro_px_file,
            "kernel_modules_path": self.kernel_modules_path,
            "proc_modules_path": self.proc_modules_path,
            "proc_cmdline_path": self.proc_cmdline_path,
            "sysfs_pci_path": self.sysfs_pci_path,
            "sysfs_drm_path": self.sysfs_drm_path,
            "log_file": self.log_file,
            "fake_lspci_file": self.fake_lspci_file,
        }

        for field_name, path in path_fields.items():
            if path and not path.startswith("/"):
                raise ValueError(f"{field_name} must be an absolute path (got: {path})")

        if self.log_format not in ("text", "json"):
            raise ValueError(f"log_format must be 'text' or 'json' (got: {self.log_format})")

        return self


def init_logging(settings: Settings) -> None:
    """Initialize logging from settings."""
    from .logging_config import setup_logging

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    setup_logging(
        level=level,
        log_format=settings.log_format,
        log_file=settings.log_file,
        backup_log=settings.backup_log,
    )
