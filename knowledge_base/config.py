# knowledge_base/config.py
from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator

class Settings(BaseSettings):
    # Vector DB
    qdrant_url: str = Field("http://localhost:6333", env="QDRANT_URL")
    collection: str = Field("document_chunks", env="COLLECTION")

    # DeepInfra (OpenAI-compatible endpoints)
    deepinfra_base: str = Field("https://api.deepinfra.com/v1/openai", env="DEEPINFRA_BASE")
    deepinfra_token: str = Field("", env="DEEPINFRA_TOKEN")
    embedding_model: str = Field("BAAI/bge-large-en-v1.5", env="EMBEDDING_MODEL")
    vision_model: str = Field("meta-llama/Llama-3.2-11B-Vision-Instruct", env="VISION_MODEL")
    # explicit vector size for embeddings
    deepinfra_vector_size: int = Field(1024, env="DEEPINFRA_VECTOR_SIZE")
    provider_timeout: float = Field(30.0, env="PROVIDER_TIMEOUT")

    # Celery / Redis
    redis_url: str = Field("redis://localhost:6379/0", env="REDIS_URL")
    celery_queue: str = Field("document_processing", env="CELERY_QUEUE")
    # "celery" sends jobs to the worker, "inline" runs them on the API event loop
    processing_mode: str = Field("celery", env="PROCESSING_MODE")
    # worker tuning; time limits in seconds
    celery_soft_time_limit: int = Field(60 * 30, env="CELERY_SOFT_TIME_LIMIT")
    celery_time_limit: int = Field(60 * 35, env="CELERY_TIME_LIMIT")
    celery_result_expires: int = Field(60 * 60 * 24, env="CELERY_RESULT_EXPIRES")
    celery_prefetch_multiplier: int = Field(1, env="CELERY_PREFETCH_MULTIPLIER")
    celery_max_tasks_per_child: Optional[int] = Field(100, env="CELERY_MAX_TASKS_PER_CHILD")

    # Blob storage
    storage_backend: str = Field("local", env="STORAGE_BACKEND")  # "local" or "minio"
    storage_bucket: str = Field("documents", env="STORAGE_BUCKET")
    upload_dir: str = Field(".data", env="UPLOAD_DIR")
    # empty list = accept every content type
    storage_allowed_mime_types: List[str] = Field([], env="STORAGE_ALLOWED_MIME_TYPES")
    max_upload_size: int = Field(50 * 1024 * 1024, env="MAX_UPLOAD_SIZE")

    # batching
    embed_batch: int = Field(64, env="EMBED_BATCH")
    chunk_insert_batch: int = Field(50, env="CHUNK_INSERT_BATCH")

    # Search
    search_min_similarity: float = Field(0.7, env="SEARCH_MIN_SIMILARITY")
    context_min_similarity: float = Field(0.6, env="CONTEXT_MIN_SIMILARITY")
    context_max_tokens: int = Field(4000, env="CONTEXT_MAX_TOKENS")
    search_rate_limit: int = Field(30, env="SEARCH_RATE_LIMIT")  # requests per minute per user

    # CORS
    cors_origins: List[str] = Field(["*"], env="CORS_ORIGINS")

    # MinIO
    minio_endpoint: Optional[str] = Field(None, env="MINIO_ENDPOINT")
    minio_access_key: Optional[str] = Field(None, env="MINIO_ACCESS_KEY")
    minio_secret_key: Optional[str] = Field(None, env="MINIO_SECRET_KEY")
    minio_secure: bool = Field(False, env="MINIO_SECURE")

    host: str = Field("0.0.0.0", env="HOST")
    port: int = Field(8000, env="PORT")

    # DB
    database_url: str = Field("postgresql+asyncpg://localhost:5432/knowledge", env="DATABASE_URL")

    # Prometheus
    prometheus_enabled: bool = Field(True, env="PROMETHEUS_ENABLED")

    # Pydantic v2 config
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # ---- field validators (pydantic v2 style) ----
    @field_validator("cors_origins", "storage_allowed_mime_types", mode="before")
    def _split_csv_list(cls, v):
        """
        Allows list settings as comma-separated strings in env, or as lists.
        Example: 'application/pdf,text/plain'
        """
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("processing_mode", "storage_backend", mode="before")
    def _normalize_choice(cls, v):
        return str(v).strip().lower()

    @field_validator("celery_time_limit")
    def _hard_limit_after_soft(cls, v, info):
        soft = info.data.get("celery_soft_time_limit")
        if soft is not None and v <= soft:
            raise ValueError("CELERY_TIME_LIMIT must be greater than CELERY_SOFT_TIME_LIMIT")
        return v

    @field_validator("deepinfra_vector_size", mode="before")
    def _validate_vector_size(cls, v):
        """
        Accepts the env value as string or int and ensures it's a positive int.
        """
        if isinstance(v, str) and v.isdigit():
            v = int(v)
        if not isinstance(v, int) or v <= 0:
            raise ValueError("DEEPINFRA_VECTOR_SIZE must be a positive integer")
        return v

settings = Settings()
