"""Container image build and removal through the docker CLI."""

from __future__ import annotations

import logging
import shlex
from typing import Optional

from .cancellation import CancelToken
from .config import DockerSettings
from .runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)


class ImageBuilder:
    """Builds, pushes and removes ``<registry>/<image>:<version>`` images."""

    def __init__(
        self,
        runner: CommandRunner,
        settings: DockerSettings,
        build_timeout: Optional[float] = 1800.0,
    ) -> None:
        self.runner = runner
        self.settings = settings
        self.build_timeout = build_timeout

    @property
    def repository(self) -> str:
        return f"{self.settings.registry}/{self.settings.image_name}"

    def image_ref(self, version: str) -> str:
        return f"{self.repository}:{version}"

    def build_command(self, version: str) -> str:
        """Multi-platform buildx invocation tagging *version* and ``latest``."""
        parts = [
            "docker buildx build",
            f"--platform {','.join(self.settings.platforms)}",
            f"--tag {shlex.quote(self.image_ref(version))}",
            f"--tag {shlex.quote(self.image_ref('latest'))}",
        ]
        for key, value in self.settings.build_args.items():
            parts.append(f"--build-arg {shlex.quote(f'{key}={value}')}")
        parts.append("--push")
        parts.append(shlex.quote(self.settings.build_context))
        return " ".join(parts)

    def build(self, version: str, cancel: Optional[CancelToken] = None) -> CommandResult:
        logger.info("Building image %s", self.image_ref(version))
        return self.runner.run(
            self.build_command(version),
            context="build",
            timeout=self.build_timeout,
            cancel=cancel,
        )

    def remove(self, version: str) -> bool:
        """``docker rmi`` the image of *version*.

        Never raises for a failed removal: an image that was never pulled
        to this host is simply absent.
        """
        ref = self.image_ref(version)
        result = self.runner.run(f"docker rmi {shlex.quote(ref)}", context="cleanup", check=False)
        if result.ok:
            logger.info("Removed old image %s", ref)
            return True
        if "No such image" in result.output:
            logger.info("Image %s not present locally", ref)
        else:
            logger.warning("Could not remove image %s: %s", ref, result.output.strip())
        return False
