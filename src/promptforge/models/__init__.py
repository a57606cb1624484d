"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
before tables are created.
"""

from promptforge.models.batch import Batch, BatchStatus
from promptforge.models.external_upload import ExternalUpload
from promptforge.models.generated_image import GeneratedImage
from promptforge.models.generation_job import GenerationJob, JobStatus
from promptforge.models.reference_image import BatchReferenceImage, ReferenceImage

__all__ = [
    "Batch",
    "BatchStatus",
    "GenerationJob",
    "JobStatus",
    "ReferenceImage",
    "BatchReferenceImage",
    "ExternalUpload",
    "GeneratedImage",
]
