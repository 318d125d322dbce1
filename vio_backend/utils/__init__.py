"""
Utility modules for the estimation backend.
"""

from .math_utils import *
