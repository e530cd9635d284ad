"""Image builders: explicit Dockerfile via BuildKit, or zero-config Railpack."""

import os
from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from conveyor.errors import BuildError
from conveyor.services.build.process import run_command

logger = structlog.get_logger(__name__)

RAILPACK_FRONTEND = "ghcr.io/railwayapp/railpack:railpack-frontend"
RAILPACK_PLAN = "railpack-plan.json"


class ImageBuilder(ABC):
    """Builds ``context_dir`` and pushes the result as ``image_tag``."""

    name: str = "builder"

    def __init__(
        self,
        buildkit_address: str,
        buildctl_binary: str = "buildctl",
        timeout: float = 1800.0,
    ):
        self.buildkit_address = buildkit_address
        self.buildctl_binary = buildctl_binary
        self.timeout = timeout

    @abstractmethod
    async def build(self, context_dir: Path, image_tag: str) -> str:
        """Run the build; returns builder output. Raises BuildError."""

    async def _buildctl(self, args: list[str], cwd: Path) -> str:
        cmd = [self.buildctl_binary, "--addr", self.buildkit_address, "build"] + args
        return await run_command(cmd, BuildError, cwd=cwd, timeout=self.timeout)


class DockerfileBuilder(ImageBuilder):
    name = "dockerfile"

    async def build(self, context_dir: Path, image_tag: str) -> str:
        logger.info("dockerfile_build_started", context=str(context_dir), image=image_tag)
        return await self._buildctl(
            [
                "--frontend", "dockerfile.v0",
                "--local", f"context={context_dir}",
                "--local", f"dockerfile={context_dir}",
                "--output", f"type=image,name={image_tag},push=true",
            ],
            cwd=context_dir,
        )


class RailpackBuilder(ImageBuilder):
    """Generates a Railpack build plan, then builds it with the Railpack frontend."""

    name = "railpack"

    def __init__(self, buildkit_address: str, railpack_binary: str = "railpack", **kwargs):
        super().__init__(buildkit_address, **kwargs)
        self.railpack_binary = railpack_binary

    async def build(self, context_dir: Path, image_tag: str) -> str:
        logger.info("railpack_build_started", context=str(context_dir), image=image_tag)
        plan_path = context_dir / RAILPACK_PLAN
        env = dict(os.environ, BUILDKIT_HOST=self.buildkit_address)
        prepare_out = await run_command(
            [self.railpack_binary, "prepare", str(context_dir), "--plan-out", str(plan_path)],
            BuildError,
            cwd=context_dir,
            env=env,
            timeout=self.timeout,
        )
        build_out = await self._buildctl(
            [
                "--frontend", "gateway.v0",
                "--opt", f"source={RAILPACK_FRONTEND}",
                "--local", f"context={context_dir}",
                "--local", f"dockerfile={plan_path}",
                "--output", f"type=image,name={image_tag},push=true",
            ],
            cwd=context_dir,
        )
        return prepare_out + build_out


def has_dockerfile(context_dir: Path) -> bool:
    return (context_dir / "Dockerfile").is_file()


def select_builder(
    context_dir: Path,
    dockerfile_builder: ImageBuilder,
    zero_config_builder: ImageBuilder,
) -> ImageBuilder:
    """Dockerfile at the context root wins; otherwise the zero-config builder."""
    if has_dockerfile(context_dir):
        return dockerfile_builder
    return zero_config_builder
