"""
HTTP surface of the tier engine.
"""
