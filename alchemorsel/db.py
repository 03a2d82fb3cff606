from databases import Database


CREATE_RECIPES_TABLE = """
CREATE TABLE IF NOT EXISTS recipes (
    id VARCHAR(64) PRIMARY KEY,
    owner_id VARCHAR(64) NOT NULL,
    name VARCHAR(256) NOT NULL,
    description TEXT NOT NULL,
    category VARCHAR(64) NOT NULL,
    cuisine VARCHAR(64) NOT NULL,
    ingredients TEXT NOT NULL,
    instructions TEXT NOT NULL,
    tags TEXT NOT NULL,
    prep_time VARCHAR(64) NOT NULL,
    cook_time VARCHAR(64) NOT NULL,
    servings VARCHAR(64) NOT NULL,
    difficulty VARCHAR(64) NOT NULL,
    calories REAL NOT NULL,
    protein REAL NOT NULL,
    carbs REAL NOT NULL,
    fat REAL NOT NULL,
    embedding TEXT NOT NULL,
    embedding_pending BOOLEAN NOT NULL,
    dietary_tags TEXT NOT NULL,
    version INTEGER NOT NULL,
    created_at VARCHAR(64) NOT NULL,
    updated_at VARCHAR(64) NOT NULL
)
"""

CREATE_FAVORITES_TABLE = """
CREATE TABLE IF NOT EXISTS recipe_favorites (
    id VARCHAR(64) PRIMARY KEY,
    recipe_id VARCHAR(64) NOT NULL REFERENCES recipes(id) ON DELETE CASCADE,
    user_id VARCHAR(64) NOT NULL,
    created_at VARCHAR(64) NOT NULL,
    UNIQUE (recipe_id, user_id)
)
"""

CREATE_DRAFTS_TABLE = """
CREATE TABLE IF NOT EXISTS recipe_drafts (
    id VARCHAR(64) PRIMARY KEY,
    owner_id VARCHAR(64) NOT NULL,
    payload TEXT NOT NULL,
    version INTEGER NOT NULL,
    created_at VARCHAR(64) NOT NULL,
    updated_at VARCHAR(64) NOT NULL
)
"""

CREATE_OWNER_INDEX = "CREATE INDEX IF NOT EXISTS recipes_owner ON recipes (owner_id)"


async def create_tables(db: Database) -> None:
    for query in (
        CREATE_RECIPES_TABLE,
        CREATE_FAVORITES_TABLE,
        CREATE_DRAFTS_TABLE,
        CREATE_OWNER_INDEX,
    ):
        await db.execute(query=query)  # pyright: ignore[reportUnknownMemberType]
