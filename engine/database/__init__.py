"""
Run history storage
"""

from .database import DatabaseManager, db_manager, initialize_database
from .models import Base, PipelineRun, StageRun
from .repository import RunRepository

__all__ = [
    'DatabaseManager',
    'db_manager',
    'initialize_database',
    'Base',
    'PipelineRun',
    'StageRun',
    'RunRepository',
]
