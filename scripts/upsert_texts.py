#!/usr/bin/env python3
"""
Embed text files and upsert them into the Qdrant vector store.

Each file becomes one document; its id is the path relative to the
source directory and ``metadata.source`` records the same path.

Usage:
    PYTHONPATH=src python scripts/upsert_texts.py --dir data/docs
    PYTHONPATH=src python scripts/upsert_texts.py --dir data/docs --glob "*.md" --reset
"""

import argparse
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

from loguru import logger
from infrastructure.log import setup_logging
from infrastructure.observability import flush
from services.vector_service.vector_store import get_vector_store


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Upsert text files into the vector store",
    )
    parser.add_argument("--dir", required=True, help="Directory to read")
    parser.add_argument("--glob", default="*.txt", help="File pattern (default: *.txt)")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Drop the collection before upserting",
    )
    args = parser.parse_args()

    setup_logging()
    root = Path(args.dir)
    paths = sorted(p for p in root.rglob(args.glob) if p.is_file())
    if not paths:
        logger.warning("No files matching '{}' under {}", args.glob, root)
        return

    store = get_vector_store()
    if args.reset:
        store.reset()

    ids = [str(p.relative_to(root)) for p in paths]
    texts = [p.read_text(encoding="utf-8") for p in paths]
    store.upsert_texts(texts, metadatas=[{"source": i} for i in ids], ids=ids)
    logger.success("Upserted {} documents into '{}'", len(ids), store.collection)
    flush()


if __name__ == "__main__":
    main()
