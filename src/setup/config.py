from dotenv import load_dotenv, find_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.setup.paths import PARENT_DIR


load_dotenv(find_dotenv(usecwd=True))


class ExtractionConfig(BaseSettings):
    """
    Knobs for the extractor. Every field can be overridden with an environment variable carrying the
    EXTRACTION_ prefix (e.g. EXTRACTION_CHUNK_SIZE=1024), either exported or placed in a .env file.
    """
    model_config = SettingsConfigDict(
        env_prefix="EXTRACTION_", env_file=PARENT_DIR/".env", env_file_encoding="utf-8", extra="ignore"
    )

    chunk_size: int = 64 * 1024
    queue_size: int = 16
    spool_size: int = 8 * 1024 * 1024
    wait_for_sink: bool = False
    show_progress: bool = False
    keep_zipfile: bool = True


extraction_config = ExtractionConfig()
