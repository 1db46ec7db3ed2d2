"""
Runebook CLI entry point.

Provides command-line access to ingestion, search and corpus maintenance.
"""

import argparse
import asyncio
import sys
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from runebook import __version__
from runebook.config.logging import get_logger, setup_logging
from runebook.config.settings import Settings, load_settings
from runebook.kb.base import DocumentStatus, EmbeddingProvider, SearchMode
from runebook.kb.components import KnowledgeBaseComponents
from runebook.kb.corpus_store import SQLiteCorpusStore


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog="runebook",
        description="Rules knowledge base for tabletop RPG rulebooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Runebook {__version__}",
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: .env in current directory)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level from config",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("config", help="Show current configuration")

    # Ingest command
    ingest_parser = subparsers.add_parser(
        "ingest",
        help="Ingest rulebooks (.txt, .pdf) into the knowledge base",
    )
    ingest_parser.add_argument("source_path", type=Path, help="File or directory to ingest")
    ingest_parser.add_argument(
        "--source",
        default=None,
        help="Source tag used in identifiers, e.g. basic_rules (default: file name)",
    )
    ingest_parser.add_argument(
        "--name",
        default=None,
        help="Display name of the document (default: file name)",
    )
    ingest_parser.add_argument(
        "--recursive",
        action="store_true",
        help="Process directories recursively",
    )
    ingest_parser.add_argument(
        "--force",
        action="store_true",
        help="Replace documents that were already ingested",
    )
    ingest_parser.add_argument(
        "--no-embed",
        action="store_true",
        help="Skip the embedding backfill (run 'runebook backfill' later)",
    )

    # Backfill command
    backfill_parser = subparsers.add_parser(
        "backfill",
        help="Generate embeddings for entries that have none",
    )
    backfill_parser.add_argument("--document", default=None, help="Only this document ID")
    backfill_parser.add_argument(
        "--force",
        action="store_true",
        help="Re-embed every entry, not only missing ones",
    )
    backfill_parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Clear the vector index first, e.g. after switching embedding models",
    )

    # Search command
    search_parser = subparsers.add_parser("search", help="Search the rules")
    search_parser.add_argument("query", help='Search text, e.g. "opportunity attack"')
    search_parser.add_argument(
        "--mode",
        choices=[mode.value for mode in SearchMode],
        default=SearchMode.HYBRID.value,
        help="Retrieval mode (default: hybrid)",
    )
    search_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Results per page (default: SEARCH__DEFAULT_LIMIT from config)",
    )
    search_parser.add_argument("--offset", type=int, default=0, help="Results to skip")
    search_parser.add_argument("--document", default=None, help="Only search this document ID")

    # Document commands
    documents_parser = subparsers.add_parser("documents", help="List ingested documents")
    documents_parser.add_argument(
        "--status",
        choices=[status.value for status in DocumentStatus],
        default=None,
        help="Only documents with this status",
    )

    delete_parser = subparsers.add_parser("delete", help="Delete a document and its entries")
    delete_parser.add_argument("document_id", help="Document ID (see 'runebook documents')")

    # Stat block lookups
    spell_parser = subparsers.add_parser("spell", help="Show a spell definition")
    spell_parser.add_argument("name", help='Spell name, e.g. "Fireball"')

    monster_parser = subparsers.add_parser("monster", help="Show a monster stat block")
    monster_parser.add_argument("name", help='Monster name, e.g. "Goblin"')

    # Category commands
    category_parser = subparsers.add_parser("category", help="Manage entry categories")
    category_sub = category_parser.add_subparsers(dest="category_command")

    category_add = category_sub.add_parser("add", help="Create a category")
    category_add.add_argument("name")
    category_add.add_argument("--description", default=None)
    category_add.add_argument("--parent", default=None, help="Parent category name")

    category_sub.add_parser("list", help="List categories")

    category_assign = category_sub.add_parser("assign", help="Tag an entry with a category")
    category_assign.add_argument("entry_id")
    category_assign.add_argument("category_name")

    category_unassign = category_sub.add_parser("unassign", help="Remove a category from an entry")
    category_unassign.add_argument("entry_id")
    category_unassign.add_argument("category_name")

    return parser


@asynccontextmanager
async def open_knowledge_base(
    settings: Settings,
    with_embeddings: bool = True,
) -> AsyncIterator[tuple[KnowledgeBaseComponents, SQLiteCorpusStore, EmbeddingProvider | None]]:
    """
    Open the corpus store and, optionally, the embedding provider.

    A provider that fails to initialize is logged and dropped, so commands
    still work with full-text search only.
    """
    logger = get_logger(__name__)
    factory = KnowledgeBaseComponents(settings)

    provider = factory.create_embedding_provider() if with_embeddings else None
    if provider is not None:
        try:
            await provider.initialize()
        except Exception as e:
            logger.warning(f"Embedding provider unavailable, continuing without it: {e}")
            provider = None

    try:
        async with factory.create_corpus_store() as store:
            yield factory, store, provider
    finally:
        if provider is not None:
            await provider.shutdown()


def cmd_config(settings: Settings) -> int:
    """Show current configuration."""
    logger = get_logger(__name__)

    logger.info("\n=== Runebook Configuration ===\n")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Log Level: {settings.log_level}")
    logger.info(f"Log File: {settings.log_file or 'None (console only)'}")
    logger.info(f"\nDatabase: {settings.kb.database_path}")
    logger.info(f"Vector DB: {settings.kb.vector_db_path} ({settings.kb.collection_name})")
    logger.info(f"Min Entry Length: {settings.kb.min_entry_chars}")
    logger.info(f"Embed On Ingest: {settings.kb.embed_on_ingest}")
    logger.info(f"PDF OCR: {settings.kb.ocr_enabled}")
    logger.info(f"\nEmbedding Provider: {settings.embedding.provider}")
    logger.info(f"Embedding Model: {settings.embedding.model}")
    logger.info(f"Embedding Device: {settings.embedding.device}")
    logger.info(f"Embedding API Key: {'Set' if settings.embedding.api_key else 'Not set'}")
    logger.info(f"\nRRF K: {settings.search.rrf_k}")
    logger.info(f"Candidate Pool: {settings.search.candidate_pool}")
    logger.info(f"Default Limit: {settings.search.default_limit}")

    return 0


async def cmd_ingest(args, settings: Settings) -> int:
    """
    Ingest a rulebook file or a directory of rulebooks.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    logger = get_logger(__name__)

    source_path: Path = args.source_path
    if not source_path.exists():
        logger.error(f"Source path does not exist: {source_path}")
        return 1

    embed = False if args.no_embed else None

    try:
        async with open_knowledge_base(settings, with_embeddings=not args.no_embed) as (
            factory, store, provider
        ):
            pipeline = factory.create_pipeline(store, provider)

            def progress_callback(message: str):
                logger.info(f"  {message}")

            start_time = time.time()

            if source_path.is_file():
                report = await pipeline.ingest_file(
                    source_path,
                    name=args.name,
                    source=args.source,
                    force=args.force,
                    embed=embed,
                    progress_callback=progress_callback,
                )
                reports = {str(source_path): report}
            else:
                reports = await pipeline.ingest_directory(
                    source_path,
                    recursive=args.recursive,
                    force=args.force,
                    embed=embed,
                    progress_callback=progress_callback,
                )

            elapsed = time.time() - start_time
            logger.info("\n=== Ingestion Complete ===")
            for file_path, report in reports.items():
                if report.skipped:
                    logger.info(f"  {Path(file_path).name}: skipped (already ingested)")
                else:
                    logger.info(
                        f"  {Path(file_path).name}: {report.chapters} chapters, "
                        f"{report.sections} sections, {report.entries} entries, "
                        f"{report.spells} spells, {report.monsters} monsters, "
                        f"{report.embeddings} embeddings"
                    )
            logger.info(f"Time elapsed: {elapsed:.2f}s")

            stats = await store.get_stats()
            logger.info(
                f"\nKnowledge base: {stats['documents']} documents, "
                f"{stats['entries']} entries ({stats['embedded_entries']} embedded)"
            )
            return 0

    except Exception as e:
        logger.error(f"Ingestion failed: {e}", exc_info=True)
        return 1


async def cmd_backfill(args, settings: Settings) -> int:
    logger = get_logger(__name__)

    if args.rebuild and args.document:
        logger.error("--rebuild re-embeds the whole corpus; drop --document")
        return 1

    try:
        async with open_knowledge_base(settings) as (factory, store, provider):
            if provider is None or not provider.is_available():
                logger.error("No embedding provider available (check EMBEDDING__PROVIDER)")
                return 1

            if args.rebuild:
                logger.warning("Clearing all stored embeddings...")
                await store.reset_embeddings()

            pipeline = factory.create_pipeline(store, provider)
            count = await pipeline.backfill_embeddings(
                document_id=args.document, force=args.force
            )
            logger.info(f"Embedded {count} entries")
            return 0

    except Exception as e:
        logger.error(f"Backfill failed: {e}", exc_info=True)
        return 1


async def cmd_search(args, settings: Settings) -> int:
    """Run a search and print ranked results with citations and highlights."""
    logger = get_logger(__name__)

    with_embeddings = args.mode != SearchMode.FULLTEXT.value
    limit = args.limit or settings.search.default_limit

    try:
        async with open_knowledge_base(settings, with_embeddings=with_embeddings) as (
            factory, store, provider
        ):
            engine = factory.create_engine(store, provider)
            response = await engine.search(
                args.query,
                mode=args.mode,
                limit=limit,
                offset=args.offset,
                document_id=args.document,
            )

            if not response.results:
                print("No matching rules found.")
                print("Tip: Run 'runebook ingest <file>' first.")
                return 0

            print(f"\n=== {response.mode.value} search: {response.query!r} ===")
            print(f"Showing {len(response.results)} of {response.total} results\n")

            for i, result in enumerate(response.results, start=args.offset + 1):
                entry = result.entry.entry
                print(
                    f"[{i}] {result.relevance:.3f} {result.match_type.value:<8} "
                    f"{result.entry.citation}"
                )
                if entry.title:
                    print(f"    {entry.title}")
                for snippet in result.highlights:
                    print(f"    > {snippet}")
                if not result.highlights:
                    preview = entry.content[:200].replace("\n", " ").strip()
                    print(f"    {preview}{'...' if len(entry.content) > 200 else ''}")
                print()

            return 0

    except ValueError as e:
        logger.error(f"Invalid search: {e}")
        return 1

    except Exception as e:
        logger.error(f"Search failed: {e}", exc_info=True)
        return 1


async def cmd_documents(args, settings: Settings) -> int:
    logger = get_logger(__name__)

    try:
        async with open_knowledge_base(settings, with_embeddings=False) as (_, store, _provider):
            status = DocumentStatus(args.status) if args.status else None
            documents = await store.list_documents(status=status)

            if not documents:
                print("No documents.")
                return 0

            for doc in documents:
                pages = f", {doc.page_count} pages" if doc.page_count else ""
                print(f"{doc.id}  {doc.status.value:<10}  {doc.name} ({doc.file_type.value}{pages})")
                if doc.error_log:
                    print(f"    error: {doc.error_log}")
            return 0

    except Exception as e:
        logger.error(f"Listing documents failed: {e}", exc_info=True)
        return 1


async def cmd_delete(args, settings: Settings) -> int:
    logger = get_logger(__name__)

    try:
        async with open_knowledge_base(settings, with_embeddings=False) as (_, store, _provider):
            if not await store.delete_document(args.document_id):
                logger.error(f"No such document: {args.document_id}")
                return 1
            logger.info(f"Deleted document {args.document_id}")
            return 0

    except Exception as e:
        logger.error(f"Delete failed: {e}", exc_info=True)
        return 1


async def cmd_spell(args, settings: Settings) -> int:
    logger = get_logger(__name__)

    try:
        async with open_knowledge_base(settings, with_embeddings=False) as (_, store, _provider):
            spell = await store.get_spell(args.name)
            if spell is None:
                print(f"No spell named {args.name!r}.")
                return 1

            level = "Cantrip" if spell.level == 0 else f"Level {spell.level}"
            ritual = " (ritual)" if spell.ritual else ""
            print(f"\n{spell.name}")
            print(f"{level} {spell.school}{ritual}  [{spell.source}]")
            print(f"Casting Time: {spell.casting_time}")
            print(f"Range: {spell.range}")
            print(f"Components: {spell.components}")
            print(f"Duration: {spell.duration}\n")
            print(spell.description)
            if spell.higher_levels:
                print(f"\n{spell.higher_levels}")
            return 0

    except Exception as e:
        logger.error(f"Spell lookup failed: {e}", exc_info=True)
        return 1


async def cmd_monster(args, settings: Settings) -> int:
    logger = get_logger(__name__)

    try:
        async with open_knowledge_base(settings, with_embeddings=False) as (_, store, _provider):
            monster = await store.get_monster(args.name)
            if monster is None:
                print(f"No monster named {args.name!r}.")
                return 1

            scores = monster.ability_scores
            print(f"\n{monster.name}")
            print(f"{monster.size} {monster.creature_type}, {monster.alignment}  [{monster.source}]")
            print(f"Armor Class {monster.armor_class}")
            print(f"Hit Points {monster.hit_points}")
            print(f"Speed {monster.speed}")
            print(
                f"STR {scores.strength}  DEX {scores.dexterity}  CON {scores.constitution}  "
                f"INT {scores.intelligence}  WIS {scores.wisdom}  CHA {scores.charisma}"
            )
            if monster.senses:
                print(f"Senses {monster.senses}")
            if monster.languages:
                print(f"Languages {monster.languages}")
            print(f"Challenge {monster.challenge_rating}")
            return 0

    except Exception as e:
        logger.error(f"Monster lookup failed: {e}", exc_info=True)
        return 1


async def cmd_category(args, settings: Settings) -> int:
    logger = get_logger(__name__)

    try:
        async with open_knowledge_base(settings, with_embeddings=False) as (_, store, _provider):
            if args.category_command == "add":
                parent_id = None
                if args.parent:
                    parent = await store.get_category_by_name(args.parent)
                    if parent is None:
                        logger.error(f"No such parent category: {args.parent}")
                        return 1
                    parent_id = parent.id
                category = await store.create_category(
                    args.name, description=args.description, parent_id=parent_id
                )
                print(f"{category.id}  {category.name}")

            elif args.category_command == "list":
                categories = await store.list_categories()
                names = {c.id: c.name for c in categories}
                for category in categories:
                    parent = f"  (in {names.get(category.parent_id)})" if category.parent_id else ""
                    description = f": {category.description}" if category.description else ""
                    print(f"{category.name}{parent}{description}")

            elif args.category_command == "assign":
                category = await store.get_category_by_name(args.category_name)
                if category is None:
                    logger.error(f"No such category: {args.category_name}")
                    return 1
                await store.assign_category(args.entry_id, category.id)
                logger.info(f"Tagged entry {args.entry_id} with {category.name}")

            elif args.category_command == "unassign":
                category = await store.get_category_by_name(args.category_name)
                if category is None:
                    logger.error(f"No such category: {args.category_name}")
                    return 1
                if not await store.unassign_category(args.entry_id, category.id):
                    logger.error(f"Entry {args.entry_id} is not tagged with {category.name}")
                    return 1
                logger.info(f"Removed {category.name} from entry {args.entry_id}")

            else:
                logger.error("Specify a category command: add, list, assign or unassign")
                return 1

            return 0

    except Exception as e:
        logger.error(f"Category command failed: {e}")
        return 1


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    # Load settings
    try:
        settings = load_settings(env_file=args.env_file)
    except Exception as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    if args.log_level:
        settings.log_level = args.log_level

    setup_logging(settings)

    commands = {
        "ingest": cmd_ingest,
        "backfill": cmd_backfill,
        "search": cmd_search,
        "documents": cmd_documents,
        "delete": cmd_delete,
        "spell": cmd_spell,
        "monster": cmd_monster,
        "category": cmd_category,
    }

    if args.command == "config":
        return cmd_config(settings)
    elif args.command in commands:
        return asyncio.run(commands[args.command](args, settings))
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
