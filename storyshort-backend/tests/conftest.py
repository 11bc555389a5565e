# storyshort-backend/tests/conftest.py

import os
import sys
import uuid

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import services
from database import Base
from fakes import AUDIO_URL, CAPTIONS_URL, IMAGE_URLS
from models import JobStatus
from store import JobStore


@pytest.fixture
def store():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield JobStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    engine.dispose()


@pytest.fixture
def make_job(store):
    def _make(**overrides):
        fields = {
            "id": uuid.uuid4().hex,
            "status": JobStatus.ASSETS_GENERATED,
            "image_urls": list(IMAGE_URLS),
            "audio_url": AUDIO_URL,
            "captions_url": CAPTIONS_URL,
            "progress": 0,
        }
        fields.update(overrides)
        return store.create(**fields)
    return _make


@pytest.fixture(autouse=True)
def renders_dir(tmp_path, monkeypatch):
    path = tmp_path / "renders"
    monkeypatch.setattr(services, "RENDERS_DIR", str(path))
    return path
