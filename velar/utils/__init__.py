"""
Utilities package for the Velar pipeline.
"""
