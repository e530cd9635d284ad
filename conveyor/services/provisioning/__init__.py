"""Database and volume provisioning."""

from conveyor.services.provisioning.claims import ClaimVolumeService
from conveyor.services.provisioning.database import DatabaseProvisioner, UndoStack
from conveyor.services.provisioning.volume import VolumeService

__all__ = ["ClaimVolumeService", "DatabaseProvisioner", "UndoStack", "VolumeService"]
