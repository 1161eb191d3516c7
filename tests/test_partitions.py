"""Tests for storage/partitions.py - kpartx partition mapping."""

import pytest

from pi_bakery.storage.command_runners import CommandError, CommandTimeoutError
from pi_bakery.storage.exceptions import MappingError
from pi_bakery.storage.partitions import PartitionMapper, parse_kpartx_output


KPARTX_OUTPUT = """add map loop3p1 (253:0): 0 524288 linear 7:3 8192
add map loop3p2 (253:1): 0 3571712 linear 7:3 532480
"""


class TestParseKpartxOutput:
    def test_parses_mapper_devices_in_order(self):
        assert parse_kpartx_output(KPARTX_OUTPUT) == [
            "/dev/mapper/loop3p1",
            "/dev/mapper/loop3p2",
        ]

    def test_ignores_unrelated_lines(self):
        output = "loop deleted : /dev/loop3\n  add map loop4p1 (253:2): 0 8 linear 7:4 0\n"
        assert parse_kpartx_output(output) == ["/dev/mapper/loop4p1"]

    def test_empty_output(self):
        assert parse_kpartx_output("") == []


class TestMapPartitions:
    def test_map_runs_kpartx(self, mocker):
        mock_run = mocker.patch(
            "pi_bakery.storage.partitions.run_checked_command", return_value=KPARTX_OUTPUT
        )

        devices = PartitionMapper(kpartx_path="/usr/sbin/kpartx").map_partitions(
            "/srv/images/raspios.img"
        )

        assert devices == ["/dev/mapper/loop3p1", "/dev/mapper/loop3p2"]
        mock_run.assert_called_once_with(
            ["/usr/sbin/kpartx", "-avs", "/srv/images/raspios.img"]
        )

    def test_map_without_partitions_fails(self, mocker):
        mocker.patch("pi_bakery.storage.partitions.run_checked_command", return_value="")

        with pytest.raises(MappingError, match="no partitions"):
            PartitionMapper().map_partitions("/srv/images/blank.img")

    def test_map_command_failure(self, mocker):
        mock_run = mocker.patch(
            "pi_bakery.storage.partitions.run_checked_command",
            side_effect=[
                CommandError(["kpartx"], 1, "", "failed to stat() blank.img"),
                "",
            ],
        )

        with pytest.raises(MappingError) as exc_info:
            PartitionMapper().map_partitions("/srv/images/blank.img")

        assert exc_info.value.image_path == "/srv/images/blank.img"
        assert "failed to stat()" in str(exc_info.value)
        # Nothing attached, so only the loop device check runs
        assert mock_run.call_args_list[1][0][0] == ["losetup", "-j", "/srv/images/blank.img"]
        assert mock_run.call_count == 2

    def test_map_timeout_detaches_loop_device(self, mocker):
        mock_run = mocker.patch(
            "pi_bakery.storage.partitions.run_checked_command",
            side_effect=[
                CommandTimeoutError(["kpartx", "-avs", "/srv/images/raspios.img"], 30.0),
                "/dev/loop3: []: (/srv/images/raspios.img)\n",
                "",
            ],
        )

        with pytest.raises(MappingError, match="timed out"):
            PartitionMapper().map_partitions("/srv/images/raspios.img")

        assert mock_run.call_args_list[2][0][0] == ["kpartx", "-ds", "/srv/images/raspios.img"]

    def test_map_failure_cleanup_error_keeps_original_error(self, mocker):
        mocker.patch(
            "pi_bakery.storage.partitions.run_checked_command",
            side_effect=[
                CommandError(["kpartx"], 1, "", "read error"),
                CommandError(["losetup"], 1, "", "losetup: cannot open"),
            ],
        )

        with pytest.raises(MappingError, match="read error"):
            PartitionMapper().map_partitions("/srv/images/raspios.img")


class TestUnmapPartitions:
    def test_unmap_without_loop_device_is_noop(self, mocker):
        mock_run = mocker.patch(
            "pi_bakery.storage.partitions.run_checked_command", return_value=""
        )

        PartitionMapper().unmap_partitions("/srv/images/raspios.img")

        mock_run.assert_called_once_with(["losetup", "-j", "/srv/images/raspios.img"])

    def test_unmap_removes_mappings(self, mocker):
        mock_run = mocker.patch(
            "pi_bakery.storage.partitions.run_checked_command",
            side_effect=["/dev/loop3: []: (/srv/images/raspios.img)\n", ""],
        )

        PartitionMapper().unmap_partitions("/srv/images/raspios.img")

        assert mock_run.call_args_list[1][0][0] == [
            "kpartx",
            "-ds",
            "/srv/images/raspios.img",
        ]

    def test_unmap_failure_raises(self, mocker):
        mocker.patch(
            "pi_bakery.storage.partitions.run_checked_command",
            side_effect=[
                "/dev/loop3: []: (/srv/images/raspios.img)\n",
                CommandError(["kpartx"], 1, "", "device-mapper: remove ioctl failed: Device or resource busy"),
            ],
        )

        with pytest.raises(MappingError, match="resource busy"):
            PartitionMapper().unmap_partitions("/srv/images/raspios.img")
