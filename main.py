import argparse
import logging
import sys
from typing import Any, List, Optional

from pydantic import ValidationError

from gpu_manager.config import Settings, init_logging
from gpu_manager.manager import ExitStatus, GPUManager

# option -> Settings field
PATH_OPTIONS = {
    "--log": "log_file",
    "--last-boot-file": "last_boot_file",
    "--new-boot-file": "new_boot_file",
    "--fake-lspci": "fake_lspci_file",
    "--fake-modules-path": "proc_modules_path",
    "--gpu-detection-path": "gpu_detection_path",
    "--prime-settings": "prime_settings",
    "--modprobe-d-path": "modprobe_d_path",
    "--xorg-conf-d-path": "xorg_conf_d_path",
    "--amdgpu-pro-px-file": "amdgpu_pro_px_file",
    "--offloading-conf": "offloading_conf",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpu-manager",
        description="Configure the discrete GPU of a hybrid graphics system at boot.",
    )
    for option, dest in PATH_OPTIONS.items():
        parser.add_argument(option, dest=dest, metavar="PATH", default=None)

    parser.add_argument("--backup-log", dest="backup_log", action="store_true", default=None)
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", default=None)
    parser.add_argument("--log-level", dest="log_level", default=None)
    parser.add_argument("--log-format", dest="log_format", choices=["text", "json"], default=None)

    offloading = parser.add_mutually_exclusive_group()
    offloading.add_argument(
        "--fake-requires-offloading", dest="fake_requires_offloading", action="store_true", default=None
    )
    offloading.add_argument(
        "--fake-no-requires-offloading", dest="fake_requires_offloading", action="store_false"
    )

    available = parser.add_mutually_exclusive_group()
    available.add_argument(
        "--fake-module-is-available", dest="fake_module_available", action="store_true", default=None
    )
    available.add_argument(
        "--fake-module-is-not-available", dest="fake_module_available", action="store_false"
    )

    parser.add_argument(
        "--fake-module-is-versioned", dest="fake_module_versioned", action="store_true", default=None
    )
    return parser


def settings_from_args(argv: Optional[List[str]] = None) -> Settings:
    """Command-line options override environment and .env values."""
    args = build_parser().parse_args(argv)
    overrides: dict[str, Any] = {k: v for k, v in vars(args).items() if v is not None}
    return Settings(**overrides)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        settings = settings_from_args(argv)
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return ExitStatus.FAILURE

    init_logging(settings)
    status = GPUManager(settings).run()
    logging.shutdown()
    return status


if __name__ == "__main__":
    sys.exit(main())
