"""Generate embeddings for catalog codes used by semantic search.

This script fills missing diagnosis title and procedure description
embeddings through the configured embedding provider, one batch at a
time with a fixed pause between batches.

Usage:
    # Fill all missing embeddings in both catalogs
    python -m codelink.scripts.generate_embeddings

    # Only procedures, smaller batches
    python -m codelink.scripts.generate_embeddings --vocabularies procedure --batch-size 32

    # Limit total codes per catalog
    python -m codelink.scripts.generate_embeddings --max-codes 5000
"""

import argparse
import logging
import sys
import time
from collections.abc import Sequence

from codelink.core.config import Settings, settings
from codelink.core.errors import CodeLinkError
from codelink.core.logging import configure_logging
from codelink.schemas.base import Vocabulary
from codelink.schemas.codes import CodeEntry
from codelink.services.embedding import EmbeddingProvider, create_embedding_provider
from codelink.services.engine import create_store
from codelink.services.storage import CodeStore

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BATCH_SIZE = 64
DEFAULT_MAX_CODES = 100_000
DEFAULT_PAUSE_SECONDS = 1.0


def embedding_text(entry: CodeEntry) -> str:
    """Text embedded for an entry: title, plus long title for procedures."""
    if entry.vocabulary == Vocabulary.PROCEDURE:
        return entry.long_title or entry.title
    return entry.title


def backfill_vocabulary(
    store: CodeStore,
    provider: EmbeddingProvider,
    vocabulary: Vocabulary,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_codes: int = DEFAULT_MAX_CODES,
    pause_seconds: float = DEFAULT_PAUSE_SECONDS,
) -> int:
    """Embed entries of one catalog that have no embedding yet.

    Returns:
        Number of entries updated.
    """
    total_updated = 0
    batch_num = 0
    start_time = time.time()

    while total_updated < max_codes:
        entries = store.entries_without_embeddings(vocabulary, min(batch_size, max_codes - total_updated))
        if not entries:
            break

        batch_start = time.time()
        embeddings = provider.embed_batch([embedding_text(e) for e in entries])
        updated = store.store_embeddings(
            vocabulary,
            {entry.code: embedding for entry, embedding in zip(entries, embeddings)},
        )
        if updated == 0:
            logger.warning(f"No {vocabulary.value} codes updated in batch, stopping")
            break

        total_updated += updated
        batch_num += 1
        rate = len(entries) / max(time.time() - batch_start, 1e-6)
        logger.info(
            f"{vocabulary.value} batch {batch_num}: {total_updated} updated "
            f"| {rate:.1f} codes/sec"
        )

        if pause_seconds > 0:
            time.sleep(pause_seconds)

    total_time = time.time() - start_time
    logger.info(
        f"Completed {vocabulary.value}: {total_updated} embeddings in {total_time:.1f}s"
    )
    return total_updated


def generate_embeddings(
    app_settings: Settings,
    vocabularies: Sequence[Vocabulary] = tuple(Vocabulary),
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_codes: int = DEFAULT_MAX_CODES,
    pause_seconds: float = DEFAULT_PAUSE_SECONDS,
) -> int:
    """Backfill embeddings for the selected catalogs.

    Returns:
        Total number of entries updated.
    """
    store = create_store(app_settings)
    provider = create_embedding_provider(app_settings)

    if app_settings.storage_backend.lower() == "memory":
        logger.warning("Memory backend: embeddings are kept for this process only")

    total = 0
    for vocabulary in vocabularies:
        total += backfill_vocabulary(store, provider, vocabulary, batch_size, max_codes, pause_seconds)
    return total


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(
        description="Generate embeddings for diagnosis and procedure codes"
    )
    parser.add_argument(
        "--vocabularies",
        nargs="+",
        choices=[v.value for v in Vocabulary],
        default=[v.value for v in Vocabulary],
        help="Catalogs to process (default: both)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Codes per embedding request (default: {DEFAULT_BATCH_SIZE})",
    )
    parser.add_argument(
        "--max-codes",
        type=int,
        default=DEFAULT_MAX_CODES,
        help=f"Maximum codes to process per catalog (default: {DEFAULT_MAX_CODES})",
    )
    parser.add_argument(
        "--pause",
        type=float,
        default=DEFAULT_PAUSE_SECONDS,
        help=f"Seconds to sleep between batches (default: {DEFAULT_PAUSE_SECONDS})",
    )

    args = parser.parse_args(argv)
    configure_logging(settings.log_level)

    try:
        updated = generate_embeddings(
            settings,
            vocabularies=[Vocabulary(v) for v in args.vocabularies],
            batch_size=args.batch_size,
            max_codes=args.max_codes,
            pause_seconds=args.pause,
        )
    except CodeLinkError as e:
        logger.error(f"Failed to generate embeddings: {e}")
        sys.exit(1)

    logger.info(f"Generated {updated} embeddings")
    sys.exit(0)


if __name__ == "__main__":
    main()
