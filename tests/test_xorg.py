"""Tests for the Xorg PRIME snippets."""

from unittest.mock import MagicMock, patch

import pytest

from gpu_manager.system.base import RemoveResult
from gpu_manager.system.xorg import OFFLOAD_SERVERLAYOUT, PRIME_OUTPUTCLASS, XorgConfigWriter


@pytest.fixture
def writer(tmp_path):
    return XorgConfigWriter(str(tmp_path), multiarch="x86_64-linux-gnu")


class TestPublish:
    def test_offload_layout(self, writer, tmp_path):
        assert writer.publish_offload_config() is True
        assert (tmp_path / OFFLOAD_SERVERLAYOUT).read_text() == (
            "# DO NOT EDIT. AUTOMATICALLY GENERATED BY gpu-manager\n\n"
            'Section "ServerLayout"\n'
            '    Identifier "layout"\n'
            '    Option "AllowNVIDIAGPUScreens"\n'
            "EndSection\n\n"
        )

    def test_always_discrete_output_class(self, writer, tmp_path):
        assert writer.publish_always_discrete_config() is True
        content = (tmp_path / PRIME_OUTPUTCLASS).read_text()
        assert content.startswith("# DO NOT EDIT. AUTOMATICALLY GENERATED BY gpu-manager\n\n")
        assert 'Section "OutputClass"' in content
        assert '    MatchDriver "nvidia-drm"\n' in content
        assert '    Option "PrimaryGPU" "Yes"\n' in content
        assert '    ModulePath "/x86_64-linux-gnu/nvidia/xorg"\n' in content

    def test_multiarch_from_dpkg(self, tmp_path):
        writer = XorgConfigWriter(str(tmp_path))
        result = MagicMock(returncode=0, stdout="aarch64-linux-gnu\n")
        with patch("subprocess.run", return_value=result) as mock_run:
            assert writer.publish_always_discrete_config() is True
            assert writer.publish_always_discrete_config() is True
            assert mock_run.call_count == 1
        assert "/aarch64-linux-gnu/nvidia/xorg" in (tmp_path / PRIME_OUTPUTCLASS).read_text()

    def test_no_multiarch(self, tmp_path):
        writer = XorgConfigWriter(str(tmp_path))
        with patch("subprocess.run", side_effect=FileNotFoundError()):
            assert writer.publish_always_discrete_config() is False
        assert not (tmp_path / PRIME_OUTPUTCLASS).exists()

    def test_dpkg_architecture_os_error(self, tmp_path):
        writer = XorgConfigWriter(str(tmp_path))
        with patch("subprocess.run", side_effect=OSError(8, "Exec format error")):
            assert writer.publish_always_discrete_config() is False

    def test_unwritable_directory(self, tmp_path):
        writer = XorgConfigWriter(str(tmp_path / "missing"), multiarch="x86_64-linux-gnu")
        assert writer.publish_offload_config() is False


class TestRemove:
    def test_remove_present(self, writer, tmp_path):
        writer.publish_offload_config()
        assert writer.remove_offload_config() is RemoveResult.REMOVED
        assert not (tmp_path / OFFLOAD_SERVERLAYOUT).exists()

    def test_remove_absent(self, writer):
        assert writer.remove_always_discrete_config() is RemoveResult.NOT_FOUND
        assert writer.remove_offload_config() is RemoveResult.NOT_FOUND

    def test_remove_failure(self, writer):
        writer.publish_offload_config()
        with patch("os.unlink", side_effect=PermissionError()):
            assert writer.remove_offload_config() is RemoveResult.FAILED
