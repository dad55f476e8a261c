"""
OEE Monitor - Data Models
"""
