"""Default collaborator implementations used by the stages."""

from .directives import AgentsFileDirectiveProvider, parse_directives
from .docs_client import HttpDocumentationProvider
from .editor import WorkspaceEditor
from .files import LocalFileReader, resolve_in_root
from .lessons import Lesson, LessonMemory
from .project_facts import ProjectFactDetector
from .validator import SyntaxValidator

__all__ = [
    "AgentsFileDirectiveProvider",
    "HttpDocumentationProvider",
    "Lesson",
    "LessonMemory",
    "LocalFileReader",
    "ProjectFactDetector",
    "SyntaxValidator",
    "WorkspaceEditor",
    "parse_directives",
    "resolve_in_root",
]
