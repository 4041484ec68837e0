"""Tools for building, fuzzing, minimizing and reporting coverage of fuzz harnesses."""

__version__ = "0.1.0"