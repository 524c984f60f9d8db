"""Repository layer: Protocol interfaces + SQLAlchemy implementations."""

from .bron_repo import BronRepository, SQLAlchemyBronRepository
from .run_repo import RunRepository, SQLAlchemyRunRepository
from .message_repo import MessageRepository, SQLAlchemyMessageRepository
from .artifact_repo import ArtifactRepository, SQLAlchemyArtifactRepository
from .approval_repo import ApprovalRepository, SQLAlchemyApprovalRepository

__all__ = [
    "BronRepository", "SQLAlchemyBronRepository",
    "RunRepository", "SQLAlchemyRunRepository",
    "MessageRepository", "SQLAlchemyMessageRepository",
    "ArtifactRepository", "SQLAlchemyArtifactRepository",
    "ApprovalRepository", "SQLAlchemyApprovalRepository",
]
