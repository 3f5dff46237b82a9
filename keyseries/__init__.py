"""KeySeries: consistent keypoint annotation across time-series images."""

__version__ = "0.1.0"

from keyseries.manager import CustomAnnotationManager
from keyseries.preview import ReferencePreviewEngine
from keyseries.session import AnnotationSession
from keyseries.types import (
    Annotation,
    AnnotationType,
    CustomPointAnnotation,
    CustomRegionAnnotation,
    ImageRef,
    RegularAnnotation,
    Scope,
)

__all__ = [
    "Annotation",
    "AnnotationSession",
    "AnnotationType",
    "CustomAnnotationManager",
    "CustomPointAnnotation",
    "CustomRegionAnnotation",
    "ImageRef",
    "ReferencePreviewEngine",
    "RegularAnnotation",
    "Scope",
    "__version__",
]
