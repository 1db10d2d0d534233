"""
benchbed - Templated process test bed

Renders files from templates and supervises batches of processes
launched over combinations of variables.
"""

__version__ = "0.1.0"


__all__ = ["BenchbedConfig", "load_config", "load_bed", "TestBed"]

from .config import BenchbedConfig, load_config
from .loader import load_bed
from .testbed import TestBed
