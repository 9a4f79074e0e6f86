"""
Uploaded-material processing pipeline package.
"""

from services.material_pipeline.scheduler import MaterialProcessingScheduler
from services.material_pipeline.service import MaterialProcessingService

__all__ = ["MaterialProcessingScheduler", "MaterialProcessingService"]
