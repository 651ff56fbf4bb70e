"""Recurring job entrypoints for loyalty and segmentation upkeep."""

__all__ = [
    "loyalty",
    "segments",
]
