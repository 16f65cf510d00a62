import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = os.getenv(
        "DATABASE_URL",
        f"postgresql+psycopg2://{os.getenv('POSTGRES_USER', 'tanuki')}:{os.getenv('POSTGRES_PASSWORD', 'tanuki')}@db:5432/{os.getenv('POSTGRES_DB', 'tanuki')}",
    )
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # AniList GraphQL endpoint
    anilist_api_url: str = os.getenv("ANILIST_API_URL", "https://graphql.anilist.co")
    anilist_timeout_seconds: float = float(os.getenv("ANILIST_TIMEOUT_SECONDS", "10"))

    # Quota handling (AniList allows 90 req/min and locks out for 60s on 429)
    anilist_initial_limit: int = 90
    anilist_min_request_interval_ms: int = 5000
    anilist_quota_cooldown_ms: int = 60000
    anilist_safety_buffer_ms: int = 5000
    anilist_max_retries: int = int(os.getenv("ANILIST_MAX_RETRIES", "5"))

    # Normalization
    tag_rank_threshold: int = 60
    top_tags_limit: int = 10

    # Cache expiration
    relations_stale_after_days: int = 7
    graph_cache_ttl_seconds: int = 24 * 60 * 60

    # Traversal
    sequel_hop_limit: int = int(os.getenv("SEQUEL_HOP_LIMIT", "5"))
    prequel_hop_limit: int = int(os.getenv("PREQUEL_HOP_LIMIT", "10"))
    depth1_similarity_threshold: float = 0.15
    deep_similarity_threshold: float = 0.90
    cluster_similarity_threshold: float = 0.40

    # Personalization
    personalize_expand_top_rated: int = 5
    personalize_expand_depth: int = 2
    personalize_max_nodes: int = 200
    personalize_max_results: int = 125


settings = Settings()
