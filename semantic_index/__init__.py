"""
semantic_index: semantic code index for a project's source spans.

Public API for library usage::

    from semantic_index import ProjectSession

    with ProjectSession("/path/to/project", extractor=my_extractor) as session:
        session.index_project()
        for hit in session.search_code("parse the config file", top_k=5):
            print(hit.file_path, hit.start_line, hit.score)
"""

from .errors import (
    ComputeFailed,
    IndexCorrupt,
    ModelVersionMismatch,
    NotFound,
    SemanticIndexError,
)
from .models import (
    CodeEmbedding,
    CodeSpan,
    FileChanged,
    FileRemoved,
    IndexStatus,
    ProjectFile,
    SpanKind,
)
from .session import ProjectSession

__version__ = "0.1.0"

__all__ = [
    "CodeEmbedding",
    "CodeSpan",
    "ComputeFailed",
    "FileChanged",
    "FileRemoved",
    "IndexCorrupt",
    "IndexStatus",
    "ModelVersionMismatch",
    "NotFound",
    "ProjectFile",
    "ProjectSession",
    "SemanticIndexError",
    "SpanKind",
]
