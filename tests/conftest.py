"""Shared fixtures: per-test settings, in-memory SQLite, app and HTTP client.

Every test gets its own upload root under ``tmp_path`` and its own in-memory
database, so nothing leaks between tests.
"""

from __future__ import annotations

import io
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image
from pypdf import PdfWriter

from intake.api import create_app
from intake.config import DatabaseSettings, Environment, LoggingSettings, Settings, UploadSettings
from intake.db import create_engine_from_settings, create_session_maker, create_tables
from intake.storage import FileStore

MEMORY_DB_URL = "sqlite+aiosqlite:///:memory:"


# =============================================================================
# SAMPLE FILES
# =============================================================================


def make_pdf() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def make_image(fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), (200, 30, 30)).save(buffer, format=fmt)
    return buffer.getvalue()


def stored_files(root: Path) -> list[Path]:
    """All regular files under an upload root."""
    if not root.exists():
        return []
    return sorted(p for p in root.rglob("*") if p.is_file())


@pytest.fixture
def pdf_bytes() -> bytes:
    return make_pdf()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image("PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image("JPEG")


@pytest.fixture
def document_files(pdf_bytes, png_bytes, jpeg_bytes) -> dict:
    """Multipart ``files=`` mapping with all four required documents."""
    return {
        "aadharCard": ("aadhar.pdf", pdf_bytes, "application/pdf"),
        "panCard": ("pan.pdf", pdf_bytes, "application/pdf"),
        "bankPassbook": ("passbook.jpg", jpeg_bytes, "image/jpeg"),
        "passportPhoto": ("photo.png", png_bytes, "image/png"),
    }


# =============================================================================
# SETTINGS / STORAGE / DATABASE
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        environment=Environment.TESTING,
        db=DatabaseSettings(url=MEMORY_DB_URL, create_tables_on_startup=False),
        uploads=UploadSettings(root=tmp_path / "uploads"),
        logging=LoggingSettings(format="text"),
    )


@pytest.fixture
def file_store(settings) -> FileStore:
    store = FileStore(settings.uploads)
    store.ensure_root()
    return store


@pytest_asyncio.fixture
async def db_session():
    """Standalone session on a fresh in-memory database."""
    engine = create_engine_from_settings(DatabaseSettings(url=MEMORY_DB_URL))
    await create_tables(engine)

    async with create_session_maker(engine)() as session:
        yield session

    await engine.dispose()


# =============================================================================
# API
# =============================================================================


@pytest_asyncio.fixture
async def app(settings):
    application = create_app(settings)
    await create_tables(application.state.engine)
    application.state.file_store.ensure_root()

    yield application

    await application.state.engine.dispose()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def app_session(app):
    """Session on the application's own database, for seeding and inspection."""
    async with app.state.session_maker() as session:
        yield session
