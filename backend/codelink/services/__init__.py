"""Services for CodeLink.

Services implement the retrieval and linkage pipeline:
- TextNormalizer: query cleanup and abbreviation expansion
- LexicalMatcher / VectorMatcher / HybridRanker: diagnosis and procedure search
- AnatomicalSiteExtractor: body-region tags for codes
- ClinicalRuleValidator / LinkageRanker: validated procedure linkage
- CodeLinkEngine: the pipeline behind the API
"""

from codelink.services.anatomy import AnatomicalSiteExtractor, AnatomyAgreement
from codelink.services.embedding import (
    EmbeddingProvider,
    HTTPEmbeddingProvider,
    NullEmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
)
from codelink.services.engine import CodeLinkEngine, EngineConfig, build_engine
from codelink.services.hybrid import HybridRanker
from codelink.services.lexical import LexicalMatcher
from codelink.services.linkage import LinkageRanker, RelationshipClassifier
from codelink.services.normalizer import TextNormalizer
from codelink.services.rules import ClinicalRule, ClinicalRuleValidator, default_rule_table
from codelink.services.storage import CodeStore
from codelink.services.storage_memory import InMemoryCodeStore
from codelink.services.storage_sql import PostgresCodeStore
from codelink.services.vector import VectorMatcher

__all__ = [
    # Anatomy
    "AnatomicalSiteExtractor",
    "AnatomyAgreement",
    # Embeddings
    "EmbeddingProvider",
    "HTTPEmbeddingProvider",
    "NullEmbeddingProvider",
    "SentenceTransformerEmbeddingProvider",
    # Engine
    "CodeLinkEngine",
    "EngineConfig",
    "build_engine",
    # Search
    "HybridRanker",
    "LexicalMatcher",
    "TextNormalizer",
    "VectorMatcher",
    # Linkage
    "ClinicalRule",
    "ClinicalRuleValidator",
    "LinkageRanker",
    "RelationshipClassifier",
    "default_rule_table",
    # Storage
    "CodeStore",
    "InMemoryCodeStore",
    "PostgresCodeStore",
]
