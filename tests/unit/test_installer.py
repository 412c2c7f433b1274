"""Unit tests for the Consul installer"""

import itertools
import shlex
from pathlib import Path
from unittest.mock import Mock

import pytest

from src.errors import (
    ConfigurationError,
    RemoteExecutionError,
    UploadError,
    VersionLookupError,
)
from src.installer import ConsulInstaller, routine_source, select_service_type
from src.models import InstallOptions, Target
from src.reconcile import ReconcileParams

from tests.conftest import RecordingOperator, make_operator_factory


def _installer(options, factory, lookup=None):
    return ConsulInstaller(
        options,
        Target(host="10.0.0.5"),
        operator_factory=factory,
        version_lookup=lookup or Mock(return_value="1.9.1"),
    )


class TestTLSFlags:
    """Only all three TLS flags or none of them are accepted"""

    @pytest.mark.parametrize("present", list(itertools.product([False, True], repeat=3)))
    @pytest.mark.asyncio
    async def test_tls_combinations(self, present, tls_files, operator_factory, recording_operator):
        names = ["ca_file", "cert_file", "key_file"]
        flags = {name: str(tls_files[name]) if on else "" for name, on in zip(names, present)}
        options = InstallOptions(version="1.9.1", **flags)
        installer = _installer(options, operator_factory)

        if all(present) or not any(present):
            result = await installer.install()
            assert result.success is True
        else:
            with pytest.raises(ConfigurationError) as exc_info:
                await installer.install()
            assert "all required" in str(exc_info.value)
            assert operator_factory.targets == []
            assert recording_operator.calls == []

    @pytest.mark.asyncio
    async def test_mismatched_key_rejected_before_connecting(self, tls_files, operator_factory):
        options = InstallOptions(
            version="1.9.1",
            ca_file=str(tls_files["ca_file"]),
            cert_file=str(tls_files["cert_file"]),
            key_file=str(tls_files["other_key_file"]),
        )

        with pytest.raises(ConfigurationError):
            await _installer(options, operator_factory).install()

        assert operator_factory.targets == []


class TestServiceType:
    """Join addresses decide the supervision mode"""

    @pytest.mark.parametrize("retry_join,expected", [
        ([], "exec"),
        (["10.0.0.2"], "notify"),
        (["10.0.0.2", "10.0.0.3", "provider=aws tag_key=consul"], "notify"),
    ])
    def test_select_service_type(self, retry_join, expected):
        assert select_service_type(retry_join) == expected
        installer = ConsulInstaller(InstallOptions(retry_join=retry_join))
        assert installer.service_type() == expected

    @pytest.mark.parametrize("retry_join,expected", [
        ([], "exec"),
        (["10.0.0.2"], "notify"),
        (["10.0.0.2", "10.0.0.3"], "notify"),
    ])
    @pytest.mark.asyncio
    async def test_service_type_passed_to_routine(self, retry_join, expected,
                                                 operator_factory, recording_operator):
        options = InstallOptions(version="1.9.1", retry_join=retry_join)

        result = await _installer(options, operator_factory).install()

        assert result.service_type == expected
        routine_call = recording_operator.commands[1]
        assert f"SERVICE_TYPE={expected}" in routine_call


class TestShowMode:
    """Rendering only never touches a target"""

    @pytest.mark.asyncio
    async def test_install_with_show_renders_only(self, operator_factory, recording_operator):
        lookup = Mock(return_value="1.9.1")
        options = InstallOptions(show=True, server=True, retry_join=["10.0.0.2"])

        result = await _installer(options, operator_factory, lookup).install()

        assert result.step == "show"
        assert 'retry_join = ["10.0.0.2"]' in result.config
        assert operator_factory.targets == []
        assert recording_operator.calls == []
        lookup.assert_not_called()

    def test_show_returns_rendered_config(self):
        factory = Mock()
        installer = ConsulInstaller(InstallOptions(datacenter="eu-west"), operator_factory=factory)

        assert 'datacenter = "eu-west"' in installer.show()
        factory.assert_not_called()


class TestInstallSequence:
    """Upload order, modes and routine invocation"""

    @pytest.fixture
    def binary(self, tmp_path):
        path = tmp_path / "consul"
        path.write_bytes(b"\x7fELF consul")
        return path

    @pytest.mark.asyncio
    async def test_minimal_sequence(self, operator_factory, recording_operator):
        result = await _installer(InstallOptions(version="1.9.1"), operator_factory).install()

        ws = result.workspace
        assert recording_operator.calls == [
            ("run", f"mkdir {ws}"),
            ("upload", f"{ws}/consul.hcl", 0o640),
            ("upload", f"{ws}/install.py", 0o755),
            ("run", recording_operator.commands[1]),
            ("run", f"rm -rf {ws}"),
        ]
        assert result.version == "1.9.1"
        assert result.step == "complete"

    @pytest.mark.asyncio
    async def test_full_sequence_order_and_modes(self, binary, tls_files, operator_factory, recording_operator):
        options = InstallOptions(
            binary=str(binary),
            ca_file=str(tls_files["ca_file"]),
            cert_file=str(tls_files["cert_file"]),
            key_file=str(tls_files["key_file"]),
        )

        result = await _installer(options, operator_factory).install()

        ws = result.workspace
        uploads = [call[1:] for call in recording_operator.calls if call[0] == "upload"]
        assert uploads == [
            (f"{ws}/consul", 0o755),
            (f"{ws}/consul-agent-ca.pem", 0o640),
            (f"{ws}/consul-agent-cert.pem", 0o640),
            (f"{ws}/consul-agent-key.pem", 0o640),
            (f"{ws}/consul.hcl", 0o640),
            (f"{ws}/install.py", 0o755),
        ]
        assert recording_operator.calls[-1] == ("run", f"rm -rf {ws}")

    @pytest.mark.asyncio
    async def test_binary_skips_version_lookup(self, binary, operator_factory):
        lookup = Mock(return_value="1.9.1")

        result = await _installer(InstallOptions(binary=str(binary)), operator_factory, lookup).install()

        lookup.assert_not_called()
        assert result.version == ""

    @pytest.mark.asyncio
    async def test_latest_version_is_looked_up(self, operator_factory, recording_operator):
        lookup = Mock(return_value="1.10.0")

        result = await _installer(InstallOptions(), operator_factory, lookup).install()

        lookup.assert_called_once()
        assert result.version == "1.10.0"
        assert "CONSUL_VERSION=1.10.0" in recording_operator.commands[1]

    @pytest.mark.asyncio
    async def test_version_lookup_failure(self, operator_factory):
        lookup = Mock(side_effect=VersionLookupError("checkpoint unavailable"))

        with pytest.raises(VersionLookupError):
            await _installer(InstallOptions(), operator_factory, lookup).install()

        assert operator_factory.targets == []

    @pytest.mark.asyncio
    async def test_unexpected_lookup_error_is_wrapped(self, operator_factory):
        lookup = Mock(side_effect=RuntimeError("dns"))

        with pytest.raises(VersionLookupError) as exc_info:
            await _installer(InstallOptions(), operator_factory, lookup).install()

        assert "--version" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_key_upload_failure_cleans_up_and_stops(self, binary, tls_files):
        op = RecordingOperator(fail_upload_on="consul-agent-key.pem")
        options = InstallOptions(
            binary=str(binary),
            ca_file=str(tls_files["ca_file"]),
            cert_file=str(tls_files["cert_file"]),
            key_file=str(tls_files["key_file"]),
        )

        with pytest.raises(UploadError) as exc_info:
            await _installer(options, make_operator_factory(op)).install()

        assert "error received during upload consul key file" in str(exc_info.value)
        assert exc_info.value.reason == "No space left on device"

        removals = [c for c in op.commands if c.startswith("rm -rf")]
        assert len(removals) == 1
        assert op.calls[-1][0] == "run" and op.calls[-1][1].startswith("rm -rf")
        assert not any(u.endswith("consul.hcl") or u.endswith("install.py") for u in op.uploads)
        assert len(op.commands) == 2  # mkdir and rm only, the routine never ran

    @pytest.mark.asyncio
    async def test_routine_failure_raises_with_output(self):
        op = RecordingOperator(fail_command_on="install.py")

        with pytest.raises(RemoteExecutionError) as exc_info:
            await _installer(InstallOptions(version="1.9.1"), make_operator_factory(op)).install()

        assert exc_info.value.exit_code == 1
        assert "Unsupported architecture" in exc_info.value.output
        assert op.commands[-1].startswith("rm -rf")

    @pytest.mark.asyncio
    async def test_target_passed_to_factory(self, operator_factory):
        installer = _installer(InstallOptions(version="1.9.1"), operator_factory)

        await installer.install()

        assert operator_factory.targets == [Target(host="10.0.0.5")]


class TestRoutineInvocation:
    """The command line that starts the routine on the target"""

    def test_reconcile_command_environment(self):
        installer = ConsulInstaller(InstallOptions(retry_join=["10.0.0.2"]))

        command = installer.reconcile_command("/tmp/consul-installation.abc123", "1.9.1")

        assert "TMP_DIR=/tmp/consul-installation.abc123" in command
        assert "SERVICE_TYPE=notify" in command
        assert "CONSUL_VERSION=1.9.1" in command
        assert command.endswith("python3 /tmp/consul-installation.abc123/install.py")
        assert "SUDO=sudo" in command

    def test_reconcile_command_round_trips_into_params(self):
        installer = ConsulInstaller(InstallOptions())
        command = installer.reconcile_command("/tmp/ws", "1.9.1")

        env_part = command.split("$SUDO env ", 1)[1].rsplit(" python3", 1)[0]
        environ = dict(item.split("=", 1) for item in shlex.split(env_part))
        params = ReconcileParams.from_env(environ)

        assert params.workspace == Path("/tmp/ws")
        assert params.service_type == "exec"
        assert params.version == "1.9.1"

    def test_uploaded_routine_is_reconcile_module(self):
        source = routine_source()

        assert "class Reconciler" in source
        assert 'if __name__ == "__main__":' in source
