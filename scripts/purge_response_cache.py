#!/usr/bin/env python
"""
Purge Response Cache - Remove expired and least recently used answers
and their question vectors.

Usage:
    # Expired entries, then keep at most 10000 entries
    python scripts/purge_response_cache.py

    # Custom size bound
    python scripts/purge_response_cache.py --max-entries 5000

    # Delete everything (after a tariff update)
    python scripts/purge_response_cache.py --force

Scheduling:
    # Daily via cron
    0 3 * * * cd /path/to/douane-ai && python scripts/purge_response_cache.py
"""

import sys
import os
import click
import logging

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.web import create_app
from app.chat.vector_stores import get_vector_index
from app.web.db import db
from app.rag.response_cache import DEFAULT_MAX_ENTRIES, ResponseCache

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
@click.option('--max-entries', '-n', default=DEFAULT_MAX_ENTRIES, type=int,
              help='Entries to keep after the LRU pass')
@click.option('--force', is_flag=True,
              help='Delete every cached answer')
def main(max_entries: int, force: bool):
    """Purge the semantic response cache."""
    app = create_app()

    with app.app_context():
        cache = ResponseCache(db.session, index=get_vector_index())

        if force:
            deleted = cache.purge_all()
            logger.info(f"Force purge: {deleted} entries deleted")
            return

        expired = cache.purge_expired()
        lru = cache.purge_lru(max_entries)
        logger.info(f"Expired: {expired}, LRU: {lru}, Total: {expired + lru}")


if __name__ == '__main__':
    main()
