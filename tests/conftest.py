"""
Pytest configuration and shared fixtures for the intake pipeline tests.
"""

import os
import tempfile
from email.message import EmailMessage
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing the package
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["WORKDIR"] = "/tmp"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["ANTHROPIC_API_KEY"] = "test-key"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"

from freight_intake.database import Base  # noqa: E402

# Import models to register them with SQLAlchemy Base
from freight_intake.models import Document, Intake, ProcessingLog  # noqa: F401, E402
from freight_intake.utils.external_tool import ExternalTool, ToolResult  # noqa: E402
from freight_intake.utils.rate_limit import clear_rate_limiters  # noqa: E402
from freight_intake.utils.storage import LocalStorage  # noqa: E402


@pytest.fixture(scope="session")
def test_workdir() -> Generator[str, None, None]:
    """Create a temporary work directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture(autouse=True)
def fresh_rate_limiters():
    """Start every test with empty OCR and AI call windows."""
    clear_rate_limiters()
    yield
    clear_rate_limiters()


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def sample_pdf_path(test_workdir) -> str:
    """A minimal valid PDF with one blank page and no text layer."""
    pdf_path = os.path.join(test_workdir, "test.pdf")
    pdf_content = b"""%PDF-1.4
1 0 obj
<<
/Type /Catalog
/Pages 2 0 R
>>
endobj
2 0 obj
<<
/Type /Pages
/Kids [3 0 R]
/Count 1
>>
endobj
3 0 obj
<<
/Type /Page
/Parent 2 0 R
/MediaBox [0 0 612 792]
>>
endobj
xref
0 4
0000000000 65535 f
0000000009 00000 n
0000000058 00000 n
0000000115 00000 n
trailer
<<
/Size 4
/Root 1 0 R
>>
startxref
197
%%EOF
"""
    with open(pdf_path, "wb") as f:
        f.write(pdf_content)
    return pdf_path


@pytest.fixture
def make_text_pdf(tmp_path) -> Callable[..., str]:
    """Write a PDF whose pages carry *texts* as a native text layer."""
    import fitz

    def _make(*texts: str, name: str = "text.pdf") -> str:
        path = str(tmp_path / name)
        doc = fitz.open()
        for text in texts:
            page = doc.new_page()
            page.insert_textbox(fitz.Rect(50, 50, 550, 800), text, fontsize=10)
        doc.save(path)
        doc.close()
        return path

    return _make


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    """LocalStorage rooted in a per-test directory."""
    return LocalStorage(root=str(tmp_path / "storage"))


@pytest.fixture
def make_intake(db_session) -> Callable[..., Intake]:
    def _make(**kwargs: Any) -> Intake:
        intake = Intake(status=kwargs.pop("status", "pending"), source=kwargs.pop("source", "email"), **kwargs)
        db_session.add(intake)
        db_session.commit()
        return intake

    return _make


@pytest.fixture
def make_document(db_session) -> Callable[..., Document]:
    def _make(intake: Intake, **kwargs: Any) -> Document:
        kwargs.setdefault("filename", "document.pdf")
        kwargs.setdefault("file_path", f"intakes/{intake.id}/{kwargs['filename']}")
        document = Document(intake_id=intake.id, **kwargs)
        db_session.add(document)
        db_session.commit()
        db_session.refresh(intake)
        return document

    return _make


def build_email(
    body: str = "Hello",
    subject: str = "Transport request",
    sender: str = "Jane Doe <jane@example.com>",
    to: str = "quotes@forwarder.example",
    date: str = "Mon, 06 Jan 2025 10:00:00 +0000",
    message_id: Optional[str] = "<abc123@example.com>",
    html: Optional[str] = None,
    attachments: Optional[List[tuple]] = None,
) -> bytes:
    """Build raw RFC-822 bytes. ``attachments`` holds ``(filename, maintype, subtype, payload)`` tuples."""
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message["Date"] = date
    if message_id:
        message["Message-ID"] = message_id
    if body is not None:
        message.set_content(body)
        if html:
            message.add_alternative(html, subtype="html")
    elif html:
        message.set_content(html, subtype="html")
    for filename, maintype, subtype, payload in attachments or []:
        message.add_attachment(payload, maintype=maintype, subtype=subtype, filename=filename)
    return message.as_bytes()


@pytest.fixture
def raw_email() -> Callable[..., bytes]:
    return build_email


class FakeTool(ExternalTool):
    """Records invocations; *handler* receives the args and returns a ToolResult."""

    def __init__(self, command: str = "fake", handler: Optional[Callable[[List[str]], ToolResult]] = None):
        self.command = command
        self.handler = handler
        self.calls: List[List[str]] = []

    def run(self, args: List[str], timeout: Optional[float] = None) -> ToolResult:
        self.calls.append(list(args))
        if self.handler is None:
            return ToolResult(stdout="", exit_code=0)
        return self.handler(args)


def copying_tool(command: str = "convert") -> FakeTool:
    """A converter that copies its first argument to its last."""

    def handler(args: List[str]) -> ToolResult:
        with open(args[0], "rb") as src, open(args[-1], "wb") as dest:
            dest.write(src.read())
        return ToolResult(stdout="", exit_code=0)

    return FakeTool(command, handler)


def failing_tool(command: str = "convert") -> FakeTool:
    return FakeTool(command, lambda args: ToolResult(stdout="", exit_code=1, error="boom"))


class MemoryStore:
    """In-memory stand-in for RedisStore. TTLs are recorded, not enforced."""

    def __init__(self) -> None:
        self.data: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}

    def get(self, key: str) -> Any:
        return self.data.get(key)

    def put(self, key: str, value: Any, ttl: int = 300) -> None:
        self.data[key] = value
        self.ttls[key] = ttl

    def has(self, key: str) -> bool:
        return key in self.data

    def delete(self, key: str) -> None:
        self.data.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


# Markers for categorizing tests
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual functions/methods")
    config.addinivalue_line("markers", "integration: Tests spanning several pipeline stages")
    config.addinivalue_line("markers", "requires_db: Tests requiring database")
