from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="SLOTKEEPER_", extra="ignore")

    # ---- App ----
    app_env: str = "local"  # local|dev|prod
    database_url: str = "sqlite:///./slotkeeper.db"
    allow_sqlite_in_prod: bool = False

    # ---- Workflow engine (read-only collaborator) ----
    engine_database_url: str = "sqlite:///./engine.sqlite"
    engine_resource_table: str = "workflow_entity"
    engine_tag_column: str = "tags"
    engine_id_column: str = "id"

    # ---- Pool layout ----
    project_count: int = 10
    slots_per_project: int = 5
    project_id_format: str = "CLIXEN-PROJ-{project:02d}"
    slot_id_format: str = "FOLDER-P{project:02d}-U{slot}"

    # ---- Allocator ----
    acquire_max_candidates: int = 5

    # ---- Backup / transaction guard ----
    backup_dir: str | None = None
    keep_snapshots: bool = False

    # ---- SQLite tuning (used only for sqlite:// urls) ----
    sqlite_busy_timeout_ms: int = 5000
    sqlite_begin_immediate: bool = True

    # ---- Reconciler ----
    orphan_sample_limit: int = 20

    # ---- Celery ----
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    sweep_hour_utc: int = 3

    def model_post_init(self, __context) -> None:
        if int(self.project_count) < 1 or int(self.slots_per_project) < 1:
            raise ValueError("pool layout needs project_count >= 1 and slots_per_project >= 1")
        if int(self.acquire_max_candidates) < 1:
            raise ValueError("acquire_max_candidates must be >= 1")
        if not 0 <= int(self.sweep_hour_utc) <= 23:
            raise ValueError("sweep_hour_utc must be in 0..23")

        env = (self.app_env or "local").strip().lower()
        is_prod = env in ("prod", "production")

        # File-backed sqlite is fine for one box, but prod should say so explicitly
        if is_prod and self.database_url.startswith("sqlite") and not self.allow_sqlite_in_prod:
            raise ValueError("CONFIG: sqlite database_url in prod requires allow_sqlite_in_prod=True")


settings = Settings()
