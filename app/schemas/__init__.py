# ruff: noqa: F403, F401
"""Schemas package initialization."""

from .base import *
from .download import *
from .file import *
from .quota import *
from .upload import *

# Rebuild models after all schemas are loaded
UploadSessionResponse.model_rebuild()
UsageReport.model_rebuild()
