"""Service layer for clinscribe."""

from .note_gateway import NoteGenerationGateway, validate_transcription
from .session_controller import SessionController

__all__ = [
    'NoteGenerationGateway',
    'SessionController',
    'validate_transcription',
]
