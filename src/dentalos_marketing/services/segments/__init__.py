from .attributes import HttpPatientAttributeSource, InMemoryPatientAttributeSource, PatientAttributeSource
from .evaluator import SegmentEvaluator, referenced_fields
from .service import SegmentRefreshResult, SegmentService

__all__ = [
    "HttpPatientAttributeSource",
    "InMemoryPatientAttributeSource",
    "PatientAttributeSource",
    "SegmentEvaluator",
    "SegmentRefreshResult",
    "SegmentService",
    "referenced_fields",
]
