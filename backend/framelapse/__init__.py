"""
Framelapse stabilizer - multi-pass alignment engine for timelapse frames.
"""

__version__ = "0.3.0"
