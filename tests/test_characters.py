import pytest
from pydantic import ValidationError

from conftest import body_of
from videogen.characters import CharacterCreator
from videogen.errors import InvalidCharacterParams, RemoteJobError
from videogen.schemas import CharacterParams

CHARACTER = {
    "id": "ch_123",
    "username": "mira.walks",
    "permalink": "https://sora.test/profile/mira.walks",
    "profile_picture_url": "https://cdn.test/mira.jpg",
}


@pytest.fixture
def creator(client, uploader):
    return CharacterCreator(client, uploader)


@pytest.mark.parametrize("start, end, expected", [(1, 2, "1,2"), (0.5, 3, "0.5,3"), (10, 13, "10,13")])
def test_timestamps(start, end, expected):
    assert CharacterParams(url="https://v.test/clip.mp4", start=start, end=end).timestamps == expected


@pytest.mark.parametrize("start, end", [(2, 2), (3, 1), (-1, 1), (0, 0.5), (0, 3.5)])
def test_clip_window_rejected(start, end):
    with pytest.raises(ValidationError):
        CharacterParams(url="https://v.test/clip.mp4", start=start, end=end)


def test_blank_url_rejected():
    with pytest.raises(ValidationError):
        CharacterParams(url="  ", start=0, end=2)


@pytest.mark.asyncio
async def test_create_character(creator, service):
    service.character_responses = [CHARACTER]

    character = await creator.create(CharacterParams(url=" https://v.test/clip.mp4 ", start=1, end=3))

    assert character.id == "ch_123"
    assert character.prompt_tag == "@{mira.walks}"
    request = service.calls("/sora/v1/characters")[0]
    assert body_of(request) == {"url": "https://v.test/clip.mp4", "timestamps": "1,3"}
    assert request.headers["authorization"] == "Bearer test-key"


@pytest.mark.asyncio
async def test_malformed_character_response(creator, service):
    service.character_responses = [{"id": "ch_123"}]

    with pytest.raises(RemoteJobError):
        await creator.create(CharacterParams(url="https://v.test/clip.mp4", start=1, end=2))


@pytest.mark.asyncio
async def test_character_error_status(creator, service):
    service.character_responses = [(422, {"message": "no person found in clip"})]

    with pytest.raises(RemoteJobError) as exc_info:
        await creator.create(CharacterParams(url="https://v.test/clip.mp4", start=1, end=2))

    assert exc_info.value.status == 422
    assert exc_info.value.message == "no person found in clip"


@pytest.mark.asyncio
async def test_create_from_file_uploads_then_creates(creator, service):
    service.character_responses = [CHARACTER]

    character = await creator.create_from_file(b"mp4 bytes", "clip.mp4", "video/mp4", start=0, end=2)

    assert character.username == "mira.walks"
    assert b"mp4 bytes" in service.uploads[0]
    assert body_of(service.calls("/sora/v1/characters")[0]) == {
        "url": "https://images.test/u/1.png",
        "timestamps": "0,2",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("content_type, start, end", [("image/png", 0, 2), ("video/mp4", 0, 5)])
async def test_create_from_file_validates_before_upload(creator, service, content_type, start, end):
    with pytest.raises(InvalidCharacterParams):
        await creator.create_from_file(b"bytes", "clip.mp4", content_type, start=start, end=end)

    assert service.requests == []
