from hologen.models.artifact import Artifact
from hologen.models.base import Base

__all__ = [
    "Base",
    "Artifact",
]
