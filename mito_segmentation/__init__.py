"""Segmentation and skeleton analysis of 3D mitochondria stacks."""

__version__ = "0.1"
