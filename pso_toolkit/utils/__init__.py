"""Utility modules."""

from .binary import BinaryReader, Endian, align, copy_stream, pad_stream

__all__ = ["BinaryReader", "Endian", "align", "copy_stream", "pad_stream"]
