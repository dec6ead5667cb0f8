# videogen/config.py
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_MAIN_IMAGE_PROMPT = """Background: pure white (#FFFFFF), clean, no texture.
Subject: keep the original look and material, do not change colors or structure. Remove all people, keep only the product.
Cutout: clean edges, no jaggies, no leftover background.
Lighting: even and soft, no hard shadows or color cast.
Composition: product centered, moderate margins, tidy frame.
Resolution: at least 2048x2048.
Output: PNG (transparent) or JPEG (white background), suitable for e-commerce."""

DEFAULT_SCENE_PROMPT = """Based on the product image and title, write a 15 second product video script and shot plan for sora.
1) Trending short-video style
2) Short product description and key selling points (English)
3) No subtitles or on-screen text
4) Split the timeline into 4-5 shots and label each one
5) A real American presenter on camera
6) The presenter films a mirror reflection with a handheld phone
Keep the total length strictly at 15 seconds.
Format:
Shot 1 (0-1s): scene...| camera move...| line...|
Shot 2 (1-2s): ...
Shot 3 (2-3s): ..."""


class Settings(BaseSettings):
    # DB
    DATABASE_URL: str = "sqlite:///./videogen.db"

    # CORS
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173"

    # remote video service
    API_BASE_URL: str = "https://api.sora2.email"
    API_KEY: str | None = None
    PRO_API_KEY: str | None = None  # used for sora-2-pro when set, falls back to API_KEY
    VIDEO_API_BASE: str = "/v1/video"
    CHAT_API_BASE: str = "/v1/chat/completions"
    CHARACTER_API_PATH: str = "/sora/v1/characters"
    IMAGE_MODEL: str = "gemini-2.5-flash-image"
    PROMPT_MODEL: str = "gpt-5-chat-latest"
    REQUEST_TIMEOUT: float = 300.0

    # image host
    IMAGE_UPLOAD_URL: str = "https://imageproxy.zhongzhuan.chat/api/upload"
    UPLOAD_TIMEOUT: float = 120.0

    # polling / submission pacing (seconds)
    POLL_INTERVAL: float = 2.0
    RESULT_URL_MAX_WAIT: float = 300.0
    EXTRACTION_RETRY_DELAY: float = 1.0
    SUBMIT_DELAY: float = 0.5

    # product pipeline prompts (defaults for the persisted prompt settings)
    MAIN_IMAGE_PROMPT: str = DEFAULT_MAIN_IMAGE_PROMPT
    SCENE_PROMPT: str = DEFAULT_SCENE_PROMPT

    LOG_LEVEL: str = "INFO"

    # pydantic v2 settings
    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),
        extra="ignore",
        case_sensitive=False,
    )

settings = Settings()
