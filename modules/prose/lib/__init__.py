"""Shared library for the prose plugin."""

from .database import get_connection
from .embeddings import cosine_similarity, embed_texts, pack_embedding, unpack_embedding
from .errors import (
    CollaboratorError,
    EmbeddingError,
    IncompleteRecordError,
    ParseError,
    PersistenceError,
    ProseError,
)

__all__ = [
    # Database
    "get_connection",
    # Embeddings
    "cosine_similarity",
    "embed_texts",
    "pack_embedding",
    "unpack_embedding",
    # Errors
    "CollaboratorError",
    "EmbeddingError",
    "IncompleteRecordError",
    "ParseError",
    "PersistenceError",
    "ProseError",
]
