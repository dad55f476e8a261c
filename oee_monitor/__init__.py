"""
OEE Monitor - Core Package

Production recording, OEE calculation, machine metric rollup and monthly
analytics behind a primary/fallback persistence gateway.
"""

__version__ = "1.0.0"
