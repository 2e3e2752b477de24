#!/usr/bin/env python
"""
Index Evidence - Embed database rows into the vector index.

Run after loading or updating nomenclature, legal texts, notes, PDFs or
watch documents so the hybrid retriever can find them semantically.

Usage:
    # Index every evidence kind
    python scripts/index_evidence.py

    # Index specific kinds
    python scripts/index_evidence.py --kind hs_code --kind legal_chunk

    # Smaller upsert batches
    python scripts/index_evidence.py --batch-size 20
"""

import sys
import os
import click
import logging
from typing import Tuple

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.web import create_app
from app.web.db import db
from app.chat.vector_stores import EmbeddingService, get_vector_index
from app.chat.vector_stores.indexer import ROW_LOADERS, EvidenceIndexer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
    ]
)
logger = logging.getLogger(__name__)


@click.command()
@click.option('--kind', '-k', 'kinds', multiple=True, type=click.Choice(sorted(ROW_LOADERS)),
              help='Evidence kind to index (repeatable, default: all)')
@click.option('--batch-size', '-b', default=50, type=int,
              help='Vectors per upsert batch')
def main(kinds: Tuple[str, ...], batch_size: int):
    """Embed and upsert evidence rows into the vector index."""
    app = create_app()

    with app.app_context():
        logger.info("=" * 60)
        logger.info("EVIDENCE INDEXER")
        logger.info("=" * 60)

        indexer = EvidenceIndexer(EmbeddingService(), get_vector_index(), batch_size=batch_size)
        counts = indexer.index_all(db.session, kinds or None)

        for kind, count in counts.items():
            logger.info(f"  {kind:<15} {count:>6} vectors")
        logger.info(f"Total: {sum(counts.values())} vectors")


if __name__ == '__main__':
    main()
