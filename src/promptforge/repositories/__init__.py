"""Repository layer.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from promptforge.repositories.batch import BatchRepository
from promptforge.repositories.external_upload import ExternalUploadRepository
from promptforge.repositories.generated_image import GeneratedImageRepository
from promptforge.repositories.generation_job import GenerationJobRepository
from promptforge.repositories.reference_image import ReferenceImageRepository

__all__ = [
    "BatchRepository",
    "GenerationJobRepository",
    "ReferenceImageRepository",
    "ExternalUploadRepository",
    "GeneratedImageRepository",
]
