"""
mediaflow - server-owned media processing pipeline for AI video tools.
"""
__version__ = "1.0.0"
