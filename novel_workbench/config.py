from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_title: str = "Novel Workbench"
    data_dir: Path = Path(__file__).resolve().parent.parent / "data"
    db_path: Path = Path(__file__).resolve().parent.parent / "data" / "workbench.db"

    # Chunk size bounds for AI tasks (in characters).
    # translation / polish / proofreading all share these bounds.
    default_task_chunk_size: int = 8000
    min_task_chunk_size: int = 1000
    max_task_chunk_size: int = 50000

    # GitHub Gist sync
    gist_api_base_url: str = "https://api.github.com"
    gist_timeout: float = 30.0
    gist_max_retries: int = 3
    gist_retry_base_delay: float = 1.0  # seconds, doubled per attempt
    gist_retry_max_delay: float = 10.0

    # Start the auto-sync loop together with the app
    auto_sync_enabled: bool = True

    class Config:
        env_file = ".env"
        env_prefix = "NW_"


settings = Settings()
settings.data_dir.mkdir(parents=True, exist_ok=True)
