"""Data access layer: one repository per table, all on a shared asyncpg pool."""

from conveyor.repositories.custom_domains import CustomDomainRepository
from conveyor.repositories.databases import DatabaseRepository
from conveyor.repositories.deployments import DeploymentRepository
from conveyor.repositories.env_vars import EnvVarRepository
from conveyor.repositories.git_sources import GitSourceRepository
from conveyor.repositories.jobs import JobRepository
from conveyor.repositories.projects import ProjectRepository
from conveyor.repositories.services import ServiceRepository
from conveyor.repositories.volumes import VolumeRepository

__all__ = [
    "CustomDomainRepository",
    "DatabaseRepository",
    "DeploymentRepository",
    "EnvVarRepository",
    "GitSourceRepository",
    "JobRepository",
    "ProjectRepository",
    "ServiceRepository",
    "VolumeRepository",
]
