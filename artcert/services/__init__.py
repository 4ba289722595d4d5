"""
Image fingerprinting service consumed by the HTTP layer.
"""

from .perceptual import *
