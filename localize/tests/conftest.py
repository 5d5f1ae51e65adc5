from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional
from uuid import uuid4

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from image.generator import RenderedImage, RenderError
from localize.orchestrator import RunRequest
from localize.pipeline import LocalizationServices
from nlp.translator import TranslationError
from shared.errors import StorageError
from shared.models import Base, User


class MemoryStore:
    """Blob store kept in a dict."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.fail_reads = False

    def put(self, key: str, payload: bytes, content_type: str = "image/jpeg") -> str:
        self.objects[key] = payload
        return key

    def get(self, key: str) -> bytes:
        if self.fail_reads or key not in self.objects:
            raise StorageError(f"Failed to read object {key}")
        return self.objects[key]

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    def public_url(self, key: str) -> Optional[str]:
        return f"memory://{key}"

    def resolve_url(self, key: str) -> Optional[str]:
        return self.public_url(key)


class FakeTranslator:
    """Answers from a per-language table; languages listed in ``failing`` raise."""

    def __init__(self, table: Dict[str, Dict[str, str]]) -> None:
        self.table = table
        self.failing: set[str] = set()
        self.calls: List[str] = []
        self.before_translate: Optional[Callable[[str], None]] = None

    def translate(self, items, language_name, recipe) -> Dict[str, str]:
        self.calls.append(language_name)
        if self.before_translate is not None:
            self.before_translate(language_name)
        if language_name in self.failing:
            raise TranslationError(f"Translation request failed for {language_name}")
        texts = self.table.get(language_name, {})
        return {item.id: texts.get(item.id, item.source_text) for item in items}

    def close(self) -> None:
        pass


class FakeRenderer:
    """Returns a tiny image per call and remembers every instruction."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, object]] = []
        self.failing: set[str] = set()

    def render(self, source_image, instruction, *, num_images=1, aspect_ratio=None, resolution="2K"):
        self.calls.append(
            {"instruction": instruction, "aspect_ratio": aspect_ratio, "resolution": resolution}
        )
        for language in self.failing:
            if f"provided {language} copy" in instruction:
                raise RenderError(f"Image generation failed for {language}")
        return [RenderedImage(payload=b"img", width=10, height=10)]

    def close(self) -> None:
        pass


@pytest.fixture()
def session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    with SessionLocal() as session:
        yield session
    engine.dispose()


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def translator() -> FakeTranslator:
    return FakeTranslator(
        {
            "French": {"headline": "Grand Solde"},
            "German": {"headline": "Ausverkauf"},
        }
    )


@pytest.fixture()
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture()
def services(translator: FakeTranslator, renderer: FakeRenderer, store: MemoryStore) -> LocalizationServices:
    return LocalizationServices(translator=translator, renderer=renderer, storage=store)


@pytest.fixture()
def make_user(session: Session) -> Callable[..., User]:
    def factory(balance: int = 100, role: str = "user") -> User:
        user = User(
            id=uuid4(),
            email=f"{uuid4()}@example.com",
            password_hash="hash",
            role=role,
            credits_balance=balance,
        )
        session.add(user)
        session.commit()
        return user

    return factory


@pytest.fixture()
def source_image() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (64, 48), color=(200, 30, 30)).save(buffer, format="JPEG")
    return buffer.getvalue()


@pytest.fixture()
def make_request(source_image: bytes) -> Callable[..., RunRequest]:
    def factory(**overrides) -> RunRequest:
        values = {
            "languages": ["fr", "de"],
            "source_image": source_image,
            "name": "Summer banner",
            "regions": [{"key": "headline", "source_text": "Big Sale", "bbox": [100, 100, 300, 900]}],
        }
        values.update(overrides)
        return RunRequest(**values)

    return factory
