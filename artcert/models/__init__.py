"""
Pydantic models for certification records, outcomes and API responses.
"""

from .fingerprint import *
from .certification import *
from .responses import *
