"""Marketing automation, segmentation and loyalty engine."""

__version__ = "0.1.0"
