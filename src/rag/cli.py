"""
RAG CLI
=======

Command-line interface for the experience knowledge base.

Usage:
    python -m src.rag.cli init                          # Apply database schema
    python -m src.rag.cli search "query" --tags aws     # Test search
    python -m src.rag.cli similar "text"                # Best single match
    python -m src.rag.cli add --title T --content C     # Embed and store an experience
    python -m src.rag.cli reembed <experience-id>       # Regenerate embeddings
    python -m src.rag.cli audit                         # Validate stored embeddings
    python -m src.rag.cli index create|drop|list        # Manage the vector index
    python -m src.rag.cli export --collection C --out F # Dump a collection to JSON

The dense vector migration runs from scripts/run_dense_vector_migration.py.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from uuid import UUID

import psycopg2

from .audit import audit_collection
from .config import get_settings
from .database import ExperienceDatabase
from .embedder import RAGEmbedder
from .errors import RAGError
from .export import export_collection
from .ingestion import ExperienceIngestion
from .logging_config import setup_logging_from_settings
from .retriever import ExperienceRetriever
from .store import PostgresExperienceStore

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "database" / "migrations" / "001_experiences_pgvector.sql"


def _store(db: ExperienceDatabase, settings) -> PostgresExperienceStore:
    return PostgresExperienceStore(
        db,
        collection=settings.retrieval.collection,
        dimensions=settings.embedding.dimensions,
        statement_timeout=settings.retrieval.index_timeout,
    )


def _retriever(store: PostgresExperienceStore, settings) -> ExperienceRetriever:
    return ExperienceRetriever(
        store,
        embedder=RAGEmbedder(settings.embedding),
        config=settings.retrieval,
        embedding_timeout=settings.embedding.timeout,
    )


def init_schema(settings) -> bool:
    """Initialize the experiences schema (table, decode function, index)."""
    if not SCHEMA_PATH.exists():
        logger.error(f"Migration file not found: {SCHEMA_PATH}")
        return False

    migration_sql = SCHEMA_PATH.read_text()
    with ExperienceDatabase(settings.database) as db:
        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(migration_sql)

    logger.info("Experience schema initialized successfully")
    return True


def run_search(settings, query: str, tags, sort: str, limit: int) -> bool:
    """Run a search and print the ranked results."""
    with ExperienceDatabase(settings.database) as db:
        retriever = _retriever(_store(db, settings), settings)
        results = retriever.search(query, tags=tags, sort=sort, limit=limit)

    print(f"\n{'='*60}")
    print(f"Query: {query!r}")
    print(f"Tags: {tags or '-'}  Sort: {sort}")
    print(f"Results: {len(results)}")
    print('='*60)

    for i, r in enumerate(results, 1):
        exp = r.experience
        score = f"{r.score:.3f}" if r.score is not None else "n/a"
        created = exp.created_at.date().isoformat() if exp.created_at else "?"
        print(f"\n[{i}] Similarity: {score}  Date: {created}")
        print(f"    Title: {exp.title}")
        print(f"    Tags: {', '.join(exp.tags) or '-'}")
        print(f"    Content: {exp.content[:200]}...")

    return True


def run_similar(settings, text: str, threshold) -> bool:
    """Print the best single match for a text."""
    with ExperienceDatabase(settings.database) as db:
        retriever = _retriever(_store(db, settings), settings)
        match = retriever.find_similar(text, threshold=threshold)

    if match.experience is None:
        print(f"No match above threshold (best similarity {match.similarity:.3f})")
    else:
        print(f"Match: {match.experience.title} (similarity {match.similarity:.3f})")
    return True


def run_add(settings, title: str, content: str, description: str, tags) -> bool:
    """Embed and store a new experience."""
    with ExperienceDatabase(settings.database) as db:
        ingestion = ExperienceIngestion(
            _store(db, settings),
            embedder=RAGEmbedder(settings.embedding),
            embedding_timeout=settings.embedding.timeout,
        )
        experience_id = ingestion.ingest(title, content, description=description, tags=tags)

    print(f"Ingested: {title} -> {experience_id}")
    return True


def run_reembed(settings, experience_id: str) -> bool:
    """Regenerate both embeddings of one experience."""
    with ExperienceDatabase(settings.database) as db:
        ingestion = ExperienceIngestion(
            _store(db, settings),
            embedder=RAGEmbedder(settings.embedding),
            embedding_timeout=settings.embedding.timeout,
        )
        experience = ingestion.reembed(UUID(experience_id))

    if experience is None:
        logger.error(f"Experience {experience_id} not found")
        return False
    print(f"Re-embedded: {experience.title}")
    return True


def run_audit(settings) -> bool:
    """Validate stored embeddings. Fails if any experience is invalid."""
    with ExperienceDatabase(settings.database) as db:
        report = audit_collection(
            _store(db, settings),
            dimensions=settings.embedding.dimensions,
            batch_size=settings.migration.cursor_batch_size,
        )

    print(f"\n{'='*60}")
    print("EMBEDDING VALIDATION SUMMARY")
    print('='*60)
    print(f"Valid embeddings: {report.valid}/{report.total}")
    print(f"Invalid embeddings: {report.invalid}/{report.total}")
    print(f"Success rate: {report.success_rate:.1f}%")

    for i, issue in enumerate(report.issues, 1):
        print(f"{i}. {issue['title']} ({issue['experience_id']})")
        for problem in issue["issues"]:
            print(f"   - {problem}")

    return report.invalid == 0


def run_index(settings, action: str, name: str, field: str, recreate: bool) -> bool:
    """Create, drop or list vector indexes."""
    name = name or settings.retrieval.index_name
    with ExperienceDatabase(settings.database) as db:
        store = _store(db, settings)

        if action == "list":
            indexes = store.list_vector_indexes()
            print(json.dumps(indexes, indent=2))
            return True

        if action == "drop":
            dropped = store.drop_vector_index(name)
            print(f"Dropped {name}" if dropped else f"Index {name} not found")
            return True

        existing = {idx["name"] for idx in store.list_vector_indexes()}
        if name in existing:
            if not recreate:
                logger.error(f"Index {name} already exists (use --recreate)")
                return False
            logger.info(f"Found existing vector index {name}. Recreating...")
            store.drop_vector_index(name)

        store.create_vector_index(
            name,
            field=field,
            dimensions=settings.embedding.dimensions,
            similarity="cosine",
        )

        if name not in {idx["name"] for idx in store.list_vector_indexes()}:
            logger.error(f"Vector index {name} not found after creation")
            return False

    print(f"Vector index {name} ready")
    return True


def run_export(settings, collection: str, out: str) -> bool:
    """Export a collection to a JSON file."""
    with ExperienceDatabase(settings.database) as db:
        count = export_collection(
            _store(db, settings),
            out or f"{collection}.json",
            collection=collection,
            batch_size=settings.migration.cursor_batch_size,
        )

    print(f"Exported {count} documents from '{collection}' to {out or f'{collection}.json'}")
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Experience RAG CLI")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("init", help="Initialize database schema")

    search_parser = subparsers.add_parser("search", help="Test search")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("--tags", nargs="*", default=None, help="Required tags")
    search_parser.add_argument("--sort", choices=["similarity", "date"], default="similarity")
    search_parser.add_argument("-n", "--limit", type=int, default=None, help="Number of results")

    similar_parser = subparsers.add_parser("similar", help="Find best single match")
    similar_parser.add_argument("text", help="Text to match")
    similar_parser.add_argument("--threshold", type=float, default=None)

    add_parser = subparsers.add_parser("add", help="Embed and store an experience")
    add_parser.add_argument("--title", required=True)
    add_parser.add_argument("--content", required=True)
    add_parser.add_argument("--description", default="")
    add_parser.add_argument("--tags", nargs="*", default=None)

    reembed_parser = subparsers.add_parser("reembed", help="Regenerate embeddings of one experience")
    reembed_parser.add_argument("experience_id")

    subparsers.add_parser("audit", help="Validate stored embeddings")

    index_parser = subparsers.add_parser("index", help="Manage vector index")
    index_parser.add_argument("action", choices=["create", "drop", "list"])
    index_parser.add_argument("--name", default=None, help="Index name (default from config)")
    index_parser.add_argument("--field", choices=["embedding_bin", "embedding"], default="embedding_bin")
    index_parser.add_argument("--recreate", action="store_true", help="Drop and recreate if present")

    export_parser = subparsers.add_parser("export", help="Export a collection to JSON")
    export_parser.add_argument("--collection", required=True)
    export_parser.add_argument("--out", default=None)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    settings = get_settings()
    setup_logging_from_settings(settings)

    try:
        if args.command == "init":
            success = init_schema(settings)
        elif args.command == "search":
            success = run_search(settings, args.query, args.tags, args.sort, args.limit)
        elif args.command == "similar":
            success = run_similar(settings, args.text, args.threshold)
        elif args.command == "add":
            success = run_add(settings, args.title, args.content, args.description, args.tags)
        elif args.command == "reembed":
            success = run_reembed(settings, args.experience_id)
        elif args.command == "audit":
            success = run_audit(settings)
        elif args.command == "index":
            success = run_index(settings, args.action, args.name, args.field, args.recreate)
        else:
            success = run_export(settings, args.collection, args.out)
    except (RAGError, ValueError, ConnectionError) as e:
        logger.error(f"{args.command} failed: {e}")
        success = False
    except psycopg2.Error as e:
        logger.error(f"{args.command} failed: database error: {str(e).strip()}")
        success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
