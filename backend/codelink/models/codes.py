"""SQLAlchemy models for the diagnosis and procedure catalogs.

The tables are provisioned and filled by the ingestion pipeline; the
engine only reads them. Lexical search relies on the pg_trgm and
unaccent extensions, vector search on pgvector (embeddings are stored
as float arrays and cast to ``vector`` at query time).
"""

from sqlalchemy import Boolean, String, Text
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import Float

from codelink.core.database import Base


class DiagnosisCode(Base):
    """ICD-10-CM diagnosis code."""

    __tablename__ = "icd_codes"

    code: Mapped[str] = mapped_column(String(16), primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    normalized_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    synonyms: Mapped[list[str]] = mapped_column(ARRAY(Text), nullable=False, default=list)
    chapter: Mapped[str | None] = mapped_column(Text, nullable=True)
    block: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_specifiers: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Recomputed out-of-band by the embedding backfill
    title_embedding: Mapped[list[float] | None] = mapped_column(
        ARRAY(Float),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<DiagnosisCode(code='{self.code}', title='{self.title}')>"


class ProcedureCode(Base):
    """CPT procedure code."""

    __tablename__ = "cpt_codes"

    code: Mapped[str] = mapped_column(String(16), primary_key=True)
    display: Mapped[str] = mapped_column(Text, nullable=False)
    short_description: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    normalized_display: Mapped[str | None] = mapped_column(Text, nullable=True)
    synonyms: Mapped[list[str]] = mapped_column(ARRAY(Text), nullable=False, default=list)
    chapter: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    subchapter: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    display_embedding: Mapped[list[float] | None] = mapped_column(
        ARRAY(Float),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ProcedureCode(code='{self.code}', display='{self.display}', active={self.active})>"
