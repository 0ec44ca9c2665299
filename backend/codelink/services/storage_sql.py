"""PostgreSQL code catalog store.

Lexical matching runs in the database with pg_trgm and unaccent so the
full catalogs never have to be loaded into memory. Vector matching
casts the stored float arrays to pgvector ``vector`` and orders by
cosine distance.

Key features:
1. Prefix, code and synonym matching via ILIKE
2. Fuzzy matching using PostgreSQL trigram similarity (pg_trgm)
3. Cosine similarity search using pgvector
"""

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import select, text, update
from sqlalchemy.exc import DataError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from codelink.core.database import get_session_factory
from codelink.core.errors import EmbeddingUnavailable, StorageUnavailable
from codelink.models.codes import DiagnosisCode, ProcedureCode
from codelink.schemas.base import Vocabulary
from codelink.schemas.codes import CodeEntry
from codelink.services.lexical import (
    CODE_PREFIX_WEIGHT,
    COMPACT_CODE_MIN_LENGTH,
    NORMALIZED_PREFIX_WEIGHT,
    SYNONYM_PREFIX_WEIGHT,
    TITLE_PREFIX_WEIGHT,
    TRIGRAM_MATCH_THRESHOLD,
    TRIGRAM_WEIGHT,
)
from codelink.services.storage import CodeStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _TableSpec:
    """Column expressions that present both catalogs with one shape."""

    table: str
    title: str
    normalized_title: str
    long_title: str
    subchapter: str
    has_specifiers: str
    active: str
    embedding: str

    @property
    def columns(self) -> str:
        return (
            f"code, {self.title} AS title, {self.normalized_title} AS normalized_title, "
            f"synonyms, chapter, {self.subchapter} AS subchapter, "
            f"{self.long_title} AS long_title, {self.has_specifiers} AS has_specifiers, "
            f"{self.active} AS active"
        )


_TABLES = {
    Vocabulary.DIAGNOSIS: _TableSpec(
        table="icd_codes",
        title="title",
        normalized_title="coalesce(normalized_title, lower(title))",
        long_title="NULL",
        subchapter="block",
        has_specifiers="has_specifiers",
        active="TRUE",
        embedding="title_embedding",
    ),
    Vocabulary.PROCEDURE: _TableSpec(
        table="cpt_codes",
        title="coalesce(short_description, display)",
        normalized_title="coalesce(normalized_display, lower(display))",
        long_title="display",
        subchapter="subchapter",
        has_specifiers="FALSE",
        active="active",
        embedding="display_embedding",
    ),
}


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _lexical_sql(layout: _TableSpec, active_only: bool, compact_codes: bool = False) -> str:
    synonym_prefix = (
        "EXISTS (SELECT 1 FROM unnest(synonyms) AS s WHERE unaccent(s) ILIKE :prefix)"
    )
    code_prefix = "code ILIKE :prefix"
    if compact_codes:
        # Also compare with the dots stripped from both sides
        code_prefix = f"({code_prefix} OR replace(code, '.', '') ILIKE :compact_prefix)"
    active_clause = f"AND {layout.active}" if active_only else ""
    return f"""
        SELECT {layout.columns},
            {TITLE_PREFIX_WEIGHT} * ({layout.title} ILIKE :prefix)::int
            + {NORMALIZED_PREFIX_WEIGHT} * ({layout.normalized_title} ILIKE :prefix)::int
            + {TRIGRAM_WEIGHT} * GREATEST(
                similarity({layout.title}, :query),
                similarity({layout.normalized_title}, :query)
            )
            + {CODE_PREFIX_WEIGHT} * ({code_prefix})::int
            + {SYNONYM_PREFIX_WEIGHT} * ({synonym_prefix})::int AS score
        FROM {layout.table}
        WHERE (
            {layout.title} ILIKE :prefix
            OR {layout.normalized_title} ILIKE :prefix
            OR {code_prefix}
            OR similarity({layout.title}, :query) >= :trigram_threshold
            OR similarity({layout.normalized_title}, :query) >= :trigram_threshold
            OR {synonym_prefix}
        ) {active_clause}
        ORDER BY score DESC, title ASC
        LIMIT :limit
    """


def _vector_sql(layout: _TableSpec, active_only: bool) -> str:
    active_clause = f"AND {layout.active}" if active_only else ""
    return f"""
        SELECT {layout.columns},
            1 - ({layout.embedding}::vector <=> CAST(:embedding AS vector)) AS similarity
        FROM {layout.table}
        WHERE {layout.embedding} IS NOT NULL {active_clause}
            AND 1 - ({layout.embedding}::vector <=> CAST(:embedding AS vector)) >= :threshold
        ORDER BY {layout.embedding}::vector <=> CAST(:embedding AS vector) ASC, title ASC
        LIMIT :limit
    """


def _row_to_entry(row, vocabulary: Vocabulary) -> CodeEntry:
    long_title = row.long_title if row.long_title != row.title else None
    return CodeEntry(
        code=row.code,
        title=row.title,
        vocabulary=vocabulary,
        normalized_title=row.normalized_title or "",
        synonyms=tuple(row.synonyms or ()),
        chapter=row.chapter,
        subchapter=row.subchapter,
        long_title=long_title,
        has_specifiers=bool(row.has_specifiers),
        active=bool(row.active),
    )


def _diagnosis_to_entry(model: DiagnosisCode) -> CodeEntry:
    return CodeEntry(
        code=model.code,
        title=model.title,
        vocabulary=Vocabulary.DIAGNOSIS,
        normalized_title=model.normalized_title or model.title.lower(),
        synonyms=tuple(model.synonyms or ()),
        chapter=model.chapter,
        subchapter=model.block,
        has_specifiers=model.has_specifiers,
        embedding=tuple(model.title_embedding) if model.title_embedding else None,
    )


def _procedure_to_entry(model: ProcedureCode) -> CodeEntry:
    title = model.short_description or model.display
    return CodeEntry(
        code=model.code,
        title=title,
        vocabulary=Vocabulary.PROCEDURE,
        normalized_title=model.normalized_display or model.display.lower(),
        synonyms=tuple(model.synonyms or ()),
        chapter=model.chapter,
        subchapter=model.subchapter,
        long_title=model.display if model.display != title else None,
        active=model.active,
        embedding=tuple(model.display_embedding) if model.display_embedding else None,
    )


class PostgresCodeStore(CodeStore):
    """Code catalog store backed by PostgreSQL.

    Every call opens a short-lived session and applies a per-statement
    timeout. Driver and database errors surface as StorageUnavailable.

    Usage:
        store = PostgresCodeStore()
        entries = store.lexical_query("essential hypertension", limit=32)
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        statement_timeout: float | None = 5.0,
    ) -> None:
        """Initialize the store.

        Args:
            session_factory: Factory for sync sessions; defaults to the
                application's engine.
            statement_timeout: Per-statement timeout in seconds.
        """
        self._session_factory = session_factory or get_session_factory()
        self._statement_timeout = statement_timeout

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            if self._statement_timeout:
                session.execute(
                    text("SELECT set_config('statement_timeout', :timeout, true)"),
                    {"timeout": str(int(self._statement_timeout * 1000))},
                )
            yield session
            session.commit()
        except DataError as e:
            session.rollback()
            if operation == "vector_query":
                # pgvector rejects mismatched dimensions as a data exception
                raise EmbeddingUnavailable(f"vector query rejected: {e.orig}") from e
            raise StorageUnavailable(operation, str(e.orig)) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Catalog {operation} failed: {e}")
            raise StorageUnavailable(operation, type(e).__name__) from e
        finally:
            session.close()

    def check(self) -> None:
        with self._session("check") as session:
            session.execute(text("SELECT 1"))

    def get_entry(self, vocabulary: Vocabulary, code: str) -> CodeEntry | None:
        normalized_code = code.strip().upper()
        with self._session("get_entry") as session:
            if vocabulary == Vocabulary.DIAGNOSIS:
                diagnosis = session.execute(
                    select(DiagnosisCode).where(DiagnosisCode.code == normalized_code)
                ).scalar_one_or_none()
                return _diagnosis_to_entry(diagnosis) if diagnosis else None

            procedure = session.execute(
                select(ProcedureCode).where(ProcedureCode.code == normalized_code)
            ).scalar_one_or_none()
            return _procedure_to_entry(procedure) if procedure else None

    def lexical_query(
        self,
        normalized_text: str,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.DIAGNOSIS,
        active_only: bool = True,
    ) -> list[CodeEntry]:
        if not normalized_text or limit <= 0:
            return []

        layout = _TABLES[vocabulary]
        params = {
            "query": normalized_text,
            "prefix": f"{escape_like(normalized_text)}%",
            "trigram_threshold": TRIGRAM_MATCH_THRESHOLD,
            "limit": limit,
        }
        compact_codes = len(normalized_text) >= COMPACT_CODE_MIN_LENGTH
        if compact_codes:
            params["compact_prefix"] = f"{escape_like(normalized_text.replace('.', ''))}%"
        with self._session("lexical_query") as session:
            rows = session.execute(text(_lexical_sql(layout, active_only, compact_codes)), params).all()
        return [_row_to_entry(row, vocabulary) for row in rows]

    def vector_query(
        self,
        embedding: Sequence[float],
        threshold: float,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.DIAGNOSIS,
        active_only: bool = True,
    ) -> list[tuple[CodeEntry, float]]:
        if limit <= 0:
            return []

        layout = _TABLES[vocabulary]
        params = {
            # pgvector text literal: [0.1,0.2,...]
            "embedding": "[" + ",".join(repr(float(v)) for v in embedding) + "]",
            "threshold": threshold,
            "limit": limit,
        }
        with self._session("vector_query") as session:
            rows = session.execute(text(_vector_sql(layout, active_only)), params).all()
        return [(_row_to_entry(row, vocabulary), float(row.similarity)) for row in rows]

    def keyword_query(
        self,
        keyword: str,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.PROCEDURE,
        active_only: bool = True,
    ) -> list[CodeEntry]:
        needle = keyword.strip()
        if not needle or limit <= 0:
            return []

        pattern = f"%{escape_like(needle)}%"
        with self._session("keyword_query") as session:
            if vocabulary == Vocabulary.DIAGNOSIS:
                stmt = (
                    select(DiagnosisCode)
                    .where(DiagnosisCode.title.ilike(pattern, escape="\\"))
                    .order_by(DiagnosisCode.code)
                    .limit(limit)
                )
                return [_diagnosis_to_entry(m) for m in session.execute(stmt).scalars()]

            stmt = select(ProcedureCode).where(
                ProcedureCode.display.ilike(pattern, escape="\\")
                | ProcedureCode.short_description.ilike(pattern, escape="\\")
            )
            if active_only:
                stmt = stmt.where(ProcedureCode.active.is_(True))
            stmt = stmt.order_by(ProcedureCode.code).limit(limit)
            return [_procedure_to_entry(m) for m in session.execute(stmt).scalars()]

    def entries_without_embeddings(self, vocabulary: Vocabulary, limit: int) -> list[CodeEntry]:
        with self._session("entries_without_embeddings") as session:
            if vocabulary == Vocabulary.DIAGNOSIS:
                stmt = (
                    select(DiagnosisCode)
                    .where(DiagnosisCode.title_embedding.is_(None))
                    .order_by(DiagnosisCode.code)
                    .limit(limit)
                )
                return [_diagnosis_to_entry(m) for m in session.execute(stmt).scalars()]

            stmt = (
                select(ProcedureCode)
                .where(ProcedureCode.display_embedding.is_(None))
                .order_by(ProcedureCode.code)
                .limit(limit)
            )
            return [_procedure_to_entry(m) for m in session.execute(stmt).scalars()]

    def store_embeddings(self, vocabulary: Vocabulary, embeddings: dict[str, list[float]]) -> int:
        if not embeddings:
            return 0

        if vocabulary == Vocabulary.DIAGNOSIS:
            model, column = DiagnosisCode, "title_embedding"
        else:
            model, column = ProcedureCode, "display_embedding"

        updated = 0
        with self._session("store_embeddings") as session:
            for code, embedding in embeddings.items():
                result = session.execute(
                    update(model).where(model.code == code).values({column: list(embedding)})
                )
                updated += result.rowcount or 0
        return updated
