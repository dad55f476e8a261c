"""
OEE Monitor - API Package
"""
