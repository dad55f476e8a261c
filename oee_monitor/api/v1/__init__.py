"""
OEE Monitor - API v1 Routes
"""
