"""Adapters for the external dependencies the core calls."""

from .extraction import Extractor, ImageNotReadable, TesseractExtractor
from .interactions import InteractionLookup, TableInteractionLookup

__all__ = [
    "Extractor",
    "ImageNotReadable",
    "TesseractExtractor",
    "InteractionLookup",
    "TableInteractionLookup",
]
