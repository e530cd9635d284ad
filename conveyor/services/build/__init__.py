"""Clone, build and push service images."""

from conveyor.services.build.builders import DockerfileBuilder, RailpackBuilder
from conveyor.services.build.git import GitCloner
from conveyor.services.build.pipeline import BuildPipeline
from conveyor.services.build.registry import RegistryClient

__all__ = [
    "BuildPipeline",
    "DockerfileBuilder",
    "GitCloner",
    "RailpackBuilder",
    "RegistryClient",
]
