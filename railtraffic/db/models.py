"""
Model imports for database initialization.

This file imports all models to ensure they are registered with the Base metadata.
"""

from railtraffic.db.base import Base
from railtraffic.models.optimization_run import OptimizationRun

__all__ = ["Base", "OptimizationRun"]
