"""PRS and PRSD compression codecs."""

from . import prs, prsd

__all__ = ["prs", "prsd"]
