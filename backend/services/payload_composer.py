"""
Renders the per-install shell script and packs it into a single blob.

The blob is ``base64(gzip(obfuscated_script))``; the remote executor
reverses the outer two layers on the target and runs the result with bash.
"""

import base64
import gzip
import logging
import os
import shutil
import subprocess  # nosec B404
import tempfile
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "templates",
    "install_script.sh",
)

PLACEHOLDERS = (
    "__IMAGE_URL__",
    "__PRECHECK_URL__",
    "__RDP_PASSWORD__",
    "__INSTALL_ID__",
    "__PROGRESS_ENDPOINT__",
)


class ObfuscationError(Exception):
    """Exception raised when the external obfuscation tool fails."""


def shell_single_quote_escape(value: str) -> str:
    """Escape a value for use inside a single-quoted bash string."""
    return value.replace("'", "'\\''")


def pack(script: str) -> str:
    """gzip then base64 encode a script."""
    return base64.b64encode(gzip.compress(script.encode("utf-8"))).decode("ascii")


def unpack(blob: str) -> str:
    """Inverse of ``pack``."""
    return gzip.decompress(base64.b64decode(blob)).decode("utf-8")


class Obfuscator:
    """Turns a bash script into a behaviorally identical bash script."""

    name = "none"

    def obfuscate(self, script: str) -> str:
        raise NotImplementedError


class BuiltinObfuscator(Obfuscator):
    """Self-decoding wrapper: the original script travels gzip+base64 encoded."""

    name = "builtin"

    def obfuscate(self, script: str) -> str:
        encoded = pack(script)
        return (
            "#!/bin/bash\n"
            f'eval "$(echo \'{encoded}\' | base64 -d | gunzip)"\n'
        )


class ExternalToolObfuscator(Obfuscator):
    """
    Runs an external obfuscation tool over a temporary copy of the script.

    ``args`` may reference ``{input}`` and ``{output}``; the temporary
    directory is removed on every exit path. When ``fallback`` is set, tool
    failures are logged and the fallback's output is returned instead.
    """

    name = "external"

    def __init__(
        self,
        tool: str,
        args: Optional[List[str]] = None,
        timeout: int = 30,
        fallback: Optional[Obfuscator] = None,
    ):
        self.tool = tool
        self.args = list(args or ["{input}", "-o", "{output}"])
        self.timeout = timeout
        self.fallback = fallback

    def _run_tool(self, script: str) -> str:
        executable = shutil.which(self.tool)
        if not executable:
            raise ObfuscationError(f"Obfuscation tool not found: {self.tool}")

        work_dir = tempfile.mkdtemp(prefix="rdpforge-obf-")
        try:
            input_path = os.path.join(work_dir, "input.sh")
            output_path = os.path.join(work_dir, "output.sh")
            with open(input_path, "w", encoding="utf-8") as handle:
                handle.write(script)

            command = [executable] + [
                arg.format(input=input_path, output=output_path) for arg in self.args
            ]
            try:
                result = subprocess.run(  # nosec B603
                    command,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
            except (OSError, subprocess.SubprocessError) as e:
                raise ObfuscationError(f"Obfuscation tool failed to run: {e}") from e

            if result.returncode != 0:
                raise ObfuscationError(
                    f"Obfuscation tool exited with {result.returncode}: "
                    f"{result.stderr.strip()[:200]}"
                )
            if not os.path.exists(output_path):
                raise ObfuscationError("Obfuscation tool produced no output file")
            with open(output_path, "r", encoding="utf-8") as handle:
                output = handle.read()
            if not output.strip():
                raise ObfuscationError("Obfuscation tool produced an empty script")
            return output
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def obfuscate(self, script: str) -> str:
        try:
            return self._run_tool(script)
        except ObfuscationError as e:
            if self.fallback is None:
                raise
            logger.warning("External obfuscation failed, using %s: %s", self.fallback.name, e)
            return self.fallback.obfuscate(script)


def build_obfuscator(obfuscation_config) -> Obfuscator:
    """Pick the obfuscator named by the ``obfuscation.mode`` setting."""
    mode = (obfuscation_config or {}).get("mode", "builtin")
    if mode == "external":
        return ExternalToolObfuscator(
            tool=obfuscation_config.get("tool", "bash-obfuscate"),
            args=obfuscation_config.get("args"),
            timeout=obfuscation_config.get("timeout", 30),
            fallback=BuiltinObfuscator(),
        )
    return BuiltinObfuscator()


@dataclass
class ComposedPayload:
    """A rendered script and the packed blob shipped to the target."""

    script: str
    blob: str
    image_url: str
    precheck_url: str


class PayloadComposer:
    """Fills the install template for one install and packs it."""

    def __init__(
        self,
        signer,
        obfuscator: Obfuscator,
        progress_endpoint: str,
        image_filename: str = "{slug}.gz",
        config_filename: str = "{slug}.cfg.gz",
        template_path: Optional[str] = None,
    ):
        self.signer = signer
        self.obfuscator = obfuscator
        self.progress_endpoint = progress_endpoint
        self.image_filename = image_filename
        self.config_filename = config_filename
        self.template_path = template_path or DEFAULT_TEMPLATE_PATH

    def load_template(self) -> str:
        with open(self.template_path, "r", encoding="utf-8") as handle:
            return handle.read()

    def render(self, values) -> str:
        script = self.load_template()
        for placeholder in PLACEHOLDERS:
            script = script.replace(placeholder, values.get(placeholder, ""))
        return script

    def compose(
        self, install_id: int, ip: str, windows_version: str, rdp_password: str, region: str
    ) -> ComposedPayload:
        image_name = self.image_filename.format(slug=windows_version)
        config_name = self.config_filename.format(slug=windows_version)
        image_url = self.signer.create_url(ip, image_name, install_id, region)
        precheck_url = self.signer.create_url(ip, config_name, install_id, region)

        script = self.render(
            {
                "__IMAGE_URL__": image_url,
                "__PRECHECK_URL__": precheck_url,
                "__RDP_PASSWORD__": shell_single_quote_escape(rdp_password),
                "__INSTALL_ID__": str(install_id),
                "__PROGRESS_ENDPOINT__": self.progress_endpoint,
            }
        )
        blob = pack(self.obfuscator.obfuscate(script))
        logger.info(
            "Composed payload for install %s (%s obfuscation, %d bytes)",
            install_id,
            self.obfuscator.name,
            len(blob),
        )
        return ComposedPayload(
            script=script, blob=blob, image_url=image_url, precheck_url=precheck_url
        )
