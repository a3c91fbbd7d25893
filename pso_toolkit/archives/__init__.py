"""PSO archive containers."""

from .base import ArchiveEntry, AuxiliaryPayload
from .afs import AFSArchive
from .gsl import GSLArchive
from .bml import BMLArchive

__all__ = ["ArchiveEntry", "AuxiliaryPayload", "AFSArchive", "GSLArchive", "BMLArchive"]
