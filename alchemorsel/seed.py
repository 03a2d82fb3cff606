"""Fill a database with generated recipes, or fix recipes stored without embeddings.

    python -m alchemorsel.seed generate --count 25 --owner seed
    python -m alchemorsel.seed backfill --limit 500
"""

import argparse
import asyncio

from databases import Database
from rich import print

from alchemorsel.config import Config
from alchemorsel.db import create_tables
from alchemorsel.drafts import SqlDraftStore
from alchemorsel.embeddings import EmbeddingGenerator
from alchemorsel.generation import GenerationClient
from alchemorsel.logs import configure_logging
from alchemorsel.pipeline import RecipePipeline
from alchemorsel.repository import SqlRecipeRepository
from alchemorsel.vector_index import RecipeVectorIndex


SEED_PROMPTS = [
    "Create a traditional Italian pasta recipe with a unique twist",
    "Create a healthy vegan salad recipe with seasonal ingredients",
    "Create a quick breakfast smoothie recipe with protein",
    "Create a spicy Indian curry recipe with a modern twist",
    "Create a classic French dessert recipe with a contemporary presentation",
    "Create a gluten-free bread recipe with alternative flours",
    "Create a keto-friendly dinner recipe with high protein",
    "Create a Mediterranean seafood recipe with fresh herbs",
    "Create a vegetarian stir-fry recipe with Asian flavors",
    "Create a traditional Mexican recipe with authentic spices",
    "Create a Thai soup recipe with bold flavors",
    "Create a Middle Eastern appetizer recipe with mezze",
    "Create a traditional American comfort food recipe with a healthy twist",
    "Create a raw vegan dessert recipe with superfoods",
    "Create a Greek salad recipe with Mediterranean ingredients",
    "Create a Korean BBQ recipe with homemade marinades",
    "Create a traditional Spanish tapas recipe with local ingredients",
    "Create a traditional Moroccan recipe with aromatic spices",
    "Create a quick and easy recipe for busy weeknights",
    "Create a recipe perfect for meal prep and batch cooking",
    "Create a recipe using only pantry staples",
    "Create a recipe that's both kid-friendly and nutritious",
    "Create a recipe that's both budget-friendly and delicious",
    "Create a recipe that's ideal for winter comfort food",
    "Create a recipe that's perfect for brunch gatherings",
]


async def run(args: argparse.Namespace, config: Config) -> None:
    async with Database(config.db_url) as db:
        await create_tables(db)
        vector_index = (
            RecipeVectorIndex(index_name=config.pinecone_index)
            if args.pinecone
            else None
        )
        generator = GenerationClient(config=config)
        embedder = EmbeddingGenerator(config=config)
        pipeline = RecipePipeline(
            generator=generator,
            embedder=embedder,
            drafts=SqlDraftStore(db),
            repository=SqlRecipeRepository(db, vector_index=vector_index),
            config=config,
        )
        try:
            if args.command == "generate":
                prompts = [SEED_PROMPTS[i % len(SEED_PROMPTS)] for i in range(args.count)]
                results = await pipeline.generate_batch(prompts, owner_id=args.owner)
                for result in results:
                    if result.ok:
                        print(f"[green]{result.index:3d}[/green] {result.recipe!r}")
                    else:
                        print(f"[red]{result.index:3d}[/red] {result.prompt}: {result.error}")
                ok = sum(1 for r in results if r.ok)
                print(f"Stored {ok} of {len(results)} recipes.")
            else:
                done = await pipeline.backfill_embeddings(limit=args.limit)
                print(f"Backfilled {done} embeddings.")
        finally:
            await generator.close()
            await embedder.close()


def main() -> None:
    parser = argparse.ArgumentParser(prog="python -m alchemorsel.seed")
    parser.add_argument("--pinecone", action="store_true", help="keep the vector index in sync")
    sub = parser.add_subparsers(dest="command", required=True)
    generate = sub.add_parser("generate", help="generate and store recipes")
    generate.add_argument("--count", type=int, default=len(SEED_PROMPTS))
    generate.add_argument("--owner", default="seed")
    backfill = sub.add_parser("backfill", help="embed recipes stored with a placeholder")
    backfill.add_argument("--limit", type=int, default=500)
    args = parser.parse_args()

    config = Config()
    configure_logging(config.log_level)
    asyncio.run(run(args, config))


if __name__ == "__main__":
    main()
