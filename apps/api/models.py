from sqlalchemy import Column, DateTime, JSON, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base


# JSONB on PostgreSQL, plain JSON everywhere else (sqlite in tests).
DocumentData = JSON().with_variant(JSONB(), "postgresql")


class Document(Base):
    """
    One document of the multi-collection document store.

    Every collection (invitations, users, athletes, coach_profiles, ...)
    shares this table; `collection` + `doc_id` is the document path.
    Field-level semantics live in the services, not in the schema.
    """
    __tablename__ = "document"

    collection = Column(String(64), primary_key=True)
    doc_id = Column(String(255), primary_key=True)
    data = Column(DocumentData, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<Document {self.collection}/{self.doc_id}>"
