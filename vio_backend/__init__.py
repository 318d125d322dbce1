"""
Incremental visual-inertial estimation backend.
"""

__version__ = "0.1.0"
