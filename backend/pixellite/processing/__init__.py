from .service import ProcessingService, get_processing_service
from .models import ProcessedImageRecord, ProcessingParams, ProcessMode, OutputFormat

__all__ = ["ProcessingService", "get_processing_service", "ProcessedImageRecord", "ProcessingParams", "ProcessMode", "OutputFormat"]
