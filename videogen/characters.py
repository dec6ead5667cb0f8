# videogen/characters.py
# Character creation: optional video upload to the image host, then the characters endpoint

import logging
from typing import Optional

from .client import RemoteJobClient
from .errors import InvalidCharacterParams
from .schemas import Character, CharacterParams, check_character_window
from .uploads import ImageUploader

logger = logging.getLogger(__name__)


class CharacterCreator:
    def __init__(self, client: RemoteJobClient, uploader: ImageUploader):
        self._client = client
        self._uploader = uploader

    async def create(self, params: CharacterParams) -> Character:
        return await self._client.create_character(params)

    async def create_from_file(
        self,
        content: bytes,
        filename: str,
        content_type: Optional[str],
        *,
        start: float,
        end: float,
    ) -> Character:
        """Host the clip first (same host as images), then create the character from its URL."""
        if not content_type or not content_type.startswith("video/"):
            raise InvalidCharacterParams(f"expected a video file, got {content_type or 'unknown type'}")
        check_character_window(start, end)

        url = await self._uploader.upload(content, filename=filename, content_type=content_type)
        logger.info("[CHARACTER] clip %s hosted at %s", filename, url)
        return await self.create(CharacterParams(url=url, start=start, end=end))
