"""
Delivery pipeline built on the execution engine
Maven build, dependency and static scans, image publishing, staging deploy and DAST
"""

from .pipeline import SONAR_CREDENTIAL, build_delivery_pipeline
from . import commands

__all__ = [
    'SONAR_CREDENTIAL',
    'build_delivery_pipeline',
    'commands',
]
