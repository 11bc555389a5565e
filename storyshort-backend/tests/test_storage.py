# storyshort-backend/tests/test_storage.py

import pytest

from storage import HttpStorage, LocalStorage, UploadError


class PutResponse:
    def __init__(self, status_code):
        self.status_code = status_code


class PutSession:
    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.urls = []

    def put(self, url, data=None, headers=None, timeout=None):
        self.urls.append(url)
        data.read()
        return PutResponse(self.statuses.pop(0) if self.statuses else 200)


@pytest.fixture
def video(tmp_path):
    path = tmp_path / "output.mp4"
    path.write_bytes(b"mp4")
    return str(path)


def test_local_storage_copies_under_media(tmp_path, video):
    url = LocalStorage(media_dir=str(tmp_path / "media"), base_url="http://render.test/").upload("abc", video)

    assert url == "http://render.test/media/finals/abc.mp4"
    assert (tmp_path / "media" / "finals" / "abc.mp4").read_bytes() == b"mp4"


def test_http_storage_puts_per_job(video):
    session = PutSession(503)
    storage = HttpStorage("https://store.test/upload/{job_id}", "https://cdn.test/{job_id}.mp4", session=session, sleep=lambda _: None)

    url = storage.upload("abc", video)

    assert url == "https://cdn.test/abc.mp4"
    assert session.urls == ["https://store.test/upload/abc"] * 2


def test_http_storage_client_error(video):
    storage = HttpStorage("https://store.test/upload/{job_id}", "https://cdn.test/{job_id}.mp4", session=PutSession(403))

    with pytest.raises(UploadError):
        storage.upload("abc", video)


def test_http_storage_needs_urls():
    with pytest.raises(ValueError):
        HttpStorage("", "")
