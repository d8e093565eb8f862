"""Tests for vmhost.cli module."""

from __future__ import annotations

import io
import json
from unittest.mock import patch

import pytest

from vmhost import cli
from vmhost.exceptions import CommandFailed, VmSetupError


class TestListImages:
    def test_prints_catalog(self, image_catalog, capsys):
        cli.list_images(image_catalog)
        out = capsys.readouterr().out
        assert "ubuntu-jammy" in out
        assert "Ubuntu 22.04" in out

    def test_empty_catalog_logs_warning(self, tmp_path):
        config = tmp_path / "images.yaml"
        config.write_text("images: {}\n")
        with patch("vmhost.cli.log") as mock_log:
            cli.list_images(config)
        mock_log.assert_called_once_with("WARN", "No boot images found")

    def test_subcommand(self, image_catalog, capsys):
        assert cli.main(["list-images", "--config", str(image_catalog)]) == 0
        assert "ubuntu-jammy" in capsys.readouterr().out


class TestReadSecrets:
    def test_reads_stream(self):
        stream = io.StringIO(json.dumps({"storage": {"d": {"key": "k", "init_vector": "i", "auth_data": "a"}}}))
        assert list(cli.read_secrets(stream)) == ["d"]

    def test_empty_stream(self):
        assert cli.read_secrets(io.StringIO("")) == {}


class TestMain:
    def test_setup(self, tmp_path, params_dict, wrapping_secret):
        path = tmp_path / "params.json"
        path.write_text(json.dumps(params_dict))
        with (
            patch("vmhost.cli.VmSetup") as mock_setup,
            patch("vmhost.cli.read_secrets", return_value={"test_0": wrapping_secret}),
        ):
            assert cli.main(["setup", str(path)]) == 0
        mock_setup.assert_called_once_with("test")
        params, secrets = mock_setup.return_value.setup.call_args.args
        assert params.vm_name == "test"
        assert secrets == {"test_0": wrapping_secret}

    def test_setup_without_secret_for_encrypted_volume(self, tmp_path, params_dict):
        path = tmp_path / "params.json"
        path.write_text(json.dumps(params_dict))
        with (
            patch("vmhost.cli.VmSetup") as mock_setup,
            patch("vmhost.cli.read_secrets", return_value={}),
            patch("vmhost.cli.log") as mock_log,
        ):
            assert cli.main(["setup", str(path)]) == 1
        mock_setup.assert_not_called()
        level, message = mock_log.call_args[0]
        assert level == "ERROR"
        assert "test_0" in message

    def test_recreate_uses_manifest(self, vm_params):
        with (
            patch("vmhost.cli.VmSetup") as mock_setup,
            patch("vmhost.cli.load_manifest", return_value=vm_params),
            patch("vmhost.cli.read_secrets", return_value={}),
            patch("vmhost.cli.secrets_for", return_value={}),
        ):
            assert cli.main(["recreate-unpersisted", "test"]) == 0
        mock_setup.return_value.recreate_unpersisted.assert_called_once_with(vm_params, {})

    def test_recreate_without_manifest(self):
        with (
            patch("vmhost.cli.load_manifest", return_value=None),
            patch("vmhost.cli.log") as mock_log,
        ):
            assert cli.main(["recreate-unpersisted", "test"]) == 1
        assert "has no manifest" in mock_log.call_args[0][1]

    def test_purge(self):
        with patch("vmhost.cli.VmSetup") as mock_setup:
            assert cli.main(["purge", "test"]) == 0
        mock_setup.assert_called_once_with("test")
        mock_setup.return_value.purge.assert_called_once_with()

    def test_command_failure_logged(self):
        failure = CommandFailed(["umount", "/vm/test/hugepages"], 32, "target is busy")
        with (
            patch("vmhost.cli.VmSetup") as mock_setup,
            patch("vmhost.cli.log") as mock_log,
        ):
            mock_setup.return_value.purge.side_effect = failure
            assert cli.main(["purge", "test"]) == 1
        level, message = mock_log.call_args[0]
        assert level == "ERROR"
        assert "umount /vm/test/hugepages" in message
        assert "target is busy" in message

    def test_setup_error_returns_one(self):
        with (
            patch("vmhost.cli.VmSetup", side_effect=VmSetupError("boom")),
            patch("vmhost.cli.log") as mock_log,
        ):
            assert cli.main(["purge", "test"]) == 1
        mock_log.assert_called_once_with("ERROR", "boom")

    def test_unexpected_error_returns_one(self, capsys):
        with (
            patch("vmhost.cli.VmSetup", side_effect=KeyError("surprise")),
            patch("vmhost.cli.log") as mock_log,
        ):
            assert cli.main(["purge", "test"]) == 1
        assert mock_log.call_args_list[0][0][0] == "ERROR"
        assert "Traceback" in capsys.readouterr().err

    def test_invalid_vm_name(self):
        with patch("vmhost.cli.log") as mock_log:
            assert cli.main(["purge", "Bad_Name"]) == 1
        assert "Invalid VM name" in mock_log.call_args[0][1]

    def test_missing_subcommand_exits_two(self):
        with pytest.raises(SystemExit) as exc:
            cli.main([])
        assert exc.value.code == 2
