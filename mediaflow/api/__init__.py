"""
HTTP API for the media pipeline.
"""
