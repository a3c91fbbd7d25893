"""PSO Toolkit - Phantasy Star Online archive and compression tools."""

__version__ = "0.1.0"
