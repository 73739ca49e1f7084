"""
Tests for backend/services/payload_composer.py.
"""

import os
import subprocess
from unittest.mock import Mock, patch

import pytest

from backend.services.payload_composer import (
    PLACEHOLDERS,
    BuiltinObfuscator,
    ExternalToolObfuscator,
    ObfuscationError,
    PayloadComposer,
    build_obfuscator,
    pack,
    shell_single_quote_escape,
    unpack,
)

from tests.conftest import TEST_PUBLIC_URL

PROGRESS_ENDPOINT = f"{TEST_PUBLIC_URL}/api/install/progress"


class PassThroughObfuscator:
    name = "none"

    def obfuscate(self, script):
        return script


@pytest.fixture
def composer(signer):
    return PayloadComposer(
        signer,
        PassThroughObfuscator(),
        progress_endpoint=PROGRESS_ENDPOINT,
    )


def test_pack_is_gzip_base64():
    blob = pack("echo hello\n")
    assert unpack(blob) == "echo hello\n"
    assert blob.isascii()


def test_single_quote_escape():
    assert shell_single_quote_escape("it's") == "it'\\''s"
    assert shell_single_quote_escape("plain") == "plain"


def test_default_template_has_every_placeholder(composer):
    template = composer.load_template()
    for placeholder in PLACEHOLDERS:
        assert placeholder in template


def test_compose_fills_every_placeholder(composer):
    payload = composer.compose(42, "203.0.113.10", "win11-pro", "Rdp#2024", "asia")

    for placeholder in PLACEHOLDERS:
        assert placeholder not in payload.script
    assert "export INSTALL_ID='42'" in payload.script
    assert "export RDP_PASSWORD='Rdp#2024'" in payload.script
    assert f"export PROGRESS_ENDPOINT='{PROGRESS_ENDPOINT}'" in payload.script
    assert payload.image_url in payload.script
    assert payload.precheck_url in payload.script


def test_compose_signs_urls_for_target(composer, signer):
    payload = composer.compose(42, "203.0.113.10", "win11-pro", "Rdp#2024", "asia")

    assert "/download/asia/" in payload.image_url
    assert payload.image_url.split("?")[0].endswith("/win11-pro.gz")
    assert payload.precheck_url.split("?")[0].endswith("/win11-pro.cfg.gz")

    sig = payload.image_url.split("sig=")[1]
    verified = signer.verify("203.0.113.10", "win11-pro.gz", sig)
    assert verified is not None
    assert verified.install_id == 42


def test_compose_escapes_quotes_in_rdp_password(composer):
    payload = composer.compose(1, "203.0.113.10", "win11-pro", "p'ss", "global")
    assert "export RDP_PASSWORD='p'\\''ss'" in payload.script


def test_blob_unpacks_to_obfuscated_script(signer):
    obfuscator = Mock()
    obfuscator.name = "mock"
    obfuscator.obfuscate.return_value = "#!/bin/bash\necho obfuscated\n"
    composer = PayloadComposer(signer, obfuscator, progress_endpoint=PROGRESS_ENDPOINT)

    payload = composer.compose(1, "203.0.113.10", "win11-pro", "Rdp#2024", "global")

    obfuscator.obfuscate.assert_called_once_with(payload.script)
    assert unpack(payload.blob) == "#!/bin/bash\necho obfuscated\n"


def test_custom_template(signer, tmp_path):
    template = tmp_path / "custom.sh"
    template.write_text("ID=__INSTALL_ID__ URL=__IMAGE_URL__ X=__UNKNOWN__\n")
    composer = PayloadComposer(
        signer,
        PassThroughObfuscator(),
        progress_endpoint=PROGRESS_ENDPOINT,
        template_path=str(template),
    )
    payload = composer.compose(5, "203.0.113.10", "win11-pro", "Rdp#2024", "global")
    assert payload.script.startswith("ID=5 URL=https://")
    assert "__UNKNOWN__" in payload.script


class TestBuiltinObfuscator:
    def test_wraps_script_in_self_decoding_eval(self):
        output = BuiltinObfuscator().obfuscate("echo secret\n")
        assert output.startswith("#!/bin/bash\n")
        assert "echo secret" not in output
        encoded = output.split("'")[1]
        assert unpack(encoded) == "echo secret\n"


class TestExternalToolObfuscator:
    def test_missing_tool_without_fallback(self):
        obfuscator = ExternalToolObfuscator(tool="no-such-tool")
        with patch("backend.services.payload_composer.shutil.which", return_value=None):
            with pytest.raises(ObfuscationError):
                obfuscator.obfuscate("echo hi\n")

    def test_missing_tool_uses_fallback(self):
        obfuscator = ExternalToolObfuscator(
            tool="no-such-tool", fallback=BuiltinObfuscator()
        )
        with patch("backend.services.payload_composer.shutil.which", return_value=None):
            output = obfuscator.obfuscate("echo hi\n")
        assert unpack(output.split("'")[1]) == "echo hi\n"

    def test_runs_tool_and_cleans_up(self):
        seen = {}

        def fake_run(command, **kwargs):
            input_path = command[1]
            output_path = command[3]
            seen["dir"] = os.path.dirname(input_path)
            with open(input_path, encoding="utf-8") as handle:
                assert handle.read() == "echo hi\n"
            with open(output_path, "w", encoding="utf-8") as handle:
                handle.write("OBFUSCATED\n")
            assert kwargs["timeout"] == 12
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

        obfuscator = ExternalToolObfuscator(tool="bash-obfuscate", timeout=12)
        with patch(
            "backend.services.payload_composer.shutil.which",
            return_value="/usr/bin/bash-obfuscate",
        ), patch("backend.services.payload_composer.subprocess.run", side_effect=fake_run):
            assert obfuscator.obfuscate("echo hi\n") == "OBFUSCATED\n"

        assert not os.path.exists(seen["dir"])

    def test_non_zero_exit_falls_back(self):
        obfuscator = ExternalToolObfuscator(
            tool="bash-obfuscate", fallback=BuiltinObfuscator()
        )
        failed = subprocess.CompletedProcess([], 2, stdout="", stderr="boom")
        with patch(
            "backend.services.payload_composer.shutil.which",
            return_value="/usr/bin/bash-obfuscate",
        ), patch("backend.services.payload_composer.subprocess.run", return_value=failed):
            output = obfuscator.obfuscate("echo hi\n")
        assert output.startswith("#!/bin/bash\neval")

    def test_timeout_raises_without_fallback(self):
        obfuscator = ExternalToolObfuscator(tool="bash-obfuscate")
        with patch(
            "backend.services.payload_composer.shutil.which",
            return_value="/usr/bin/bash-obfuscate",
        ), patch(
            "backend.services.payload_composer.subprocess.run",
            side_effect=subprocess.TimeoutExpired("bash-obfuscate", 30),
        ):
            with pytest.raises(ObfuscationError):
                obfuscator.obfuscate("echo hi\n")


def test_build_obfuscator_modes():
    assert isinstance(build_obfuscator({"mode": "builtin"}), BuiltinObfuscator)
    assert isinstance(build_obfuscator(None), BuiltinObfuscator)
    external = build_obfuscator({"mode": "external", "tool": "obf", "args": ["{input}"]})
    assert isinstance(external, ExternalToolObfuscator)
    assert external.tool == "obf"
    assert isinstance(external.fallback, BuiltinObfuscator)
