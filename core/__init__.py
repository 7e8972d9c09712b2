"""
Core domain components for the auto-apply pipeline.

Modules:
- models: queue/tracker enums, applicant context, form schema and payload types
- form_mapper: introspected form -> field assignment plan
"""

from .models import (
    Applicant,
    ApplicationPayload,
    FormSchema,
    MappingResult,
    Posting,
    QueueStatus,
)

__all__ = [
    "Applicant",
    "ApplicationPayload",
    "FormSchema",
    "MappingResult",
    "Posting",
    "QueueStatus",
]
