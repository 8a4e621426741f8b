from __future__ import annotations

from dataclasses import dataclass
from email.message import Message
import http.cookiejar
import os
from pathlib import Path
import shutil
import socket
import subprocess
import time
import urllib.error
import urllib.parse
import urllib.request
from uuid import uuid4

import pytest
import pytest_asyncio

from accounts import AccountDirectory
from admin import AccountAdministration
from auth import SessionTokenSigner
from authorization import Authorizer
from database import Database
from galleries import GalleryService, UploadStore
from sessions import SessionBinder


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        return None


@dataclass
class TestResponse:
    status: int
    headers: Message
    body: str


class TestClient:
    __test__ = False

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.cookie_jar = http.cookiejar.CookieJar()
        self.opener = urllib.request.build_opener(
            urllib.request.HTTPCookieProcessor(self.cookie_jar),
            _NoRedirect(),
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, str] | None = None,
        files: dict[str, tuple[str, bytes]] | None = None,
        headers: dict[str, str] | None = None,
    ) -> TestResponse:
        url = f"{self.base_url}{path}"
        body = None
        req_headers = headers.copy() if headers else {}
        if files is not None:
            boundary = uuid4().hex
            body = _encode_multipart(boundary, data or {}, files)
            req_headers.setdefault(
                "Content-Type", f"multipart/form-data; boundary={boundary}"
            )
        elif data is not None:
            encoded = urllib.parse.urlencode(data)
            body = encoded.encode("utf-8")
            req_headers.setdefault(
                "Content-Type", "application/x-www-form-urlencoded"
            )
        request = urllib.request.Request(
            url, data=body, headers=req_headers, method=method
        )
        try:
            response = self.opener.open(request, timeout=5)
        except urllib.error.HTTPError as exc:
            response = exc
        content = response.read().decode("utf-8", errors="replace")
        return TestResponse(status=response.code, headers=response.headers, body=content)

    def get_cookie(self, name: str) -> str | None:
        for cookie in self.cookie_jar:
            if cookie.name == name and not cookie.is_expired():
                return cookie.value
        return None


def _encode_multipart(
    boundary: str, fields: dict[str, str], files: dict[str, tuple[str, bytes]]
) -> bytes:
    lines: list[bytes] = []
    for name, value in fields.items():
        lines.append(f"--{boundary}".encode())
        lines.append(f'Content-Disposition: form-data; name="{name}"'.encode())
        lines.append(b"")
        lines.append(value.encode("utf-8"))
    for name, (filename, payload) in files.items():
        lines.append(f"--{boundary}".encode())
        lines.append(
            f'Content-Disposition: form-data; name="{name}"; filename="{filename}"'.encode()
        )
        lines.append(b"Content-Type: application/octet-stream")
        lines.append(b"")
        lines.append(payload)
    lines.append(f"--{boundary}--".encode())
    lines.append(b"")
    return b"\r\n".join(lines)


@dataclass
class ServerInfo:
    base_url: str
    db_path: Path
    upload_dir: Path


def _find_free_port() -> int:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return int(sock.getsockname()[1])
    except PermissionError as exc:
        raise RuntimeError("Socket binding is not permitted in this environment.") from exc


def _wait_for_server(base_url: str, proc: subprocess.Popen[str]) -> None:
    deadline = time.time() + 10
    last_error: Exception | None = None
    while time.time() < deadline:
        if proc.poll() is not None:
            raise RuntimeError("Robyn server process exited early.")
        try:
            with urllib.request.urlopen(f"{base_url}/", timeout=1) as resp:
                if resp.status == 200:
                    return
        except Exception as exc:  # pragma: no cover - transient startup errors
            last_error = exc
        time.sleep(0.2)
    raise RuntimeError(f"Robyn server failed to start: {last_error}")


@pytest.fixture(scope="module")
def server(tmp_path_factory: pytest.TempPathFactory) -> ServerInfo:
    if shutil.which("robyn") is None:
        pytest.skip("Robyn CLI is not available in this environment.")
    repo_root = Path(__file__).resolve().parents[1]
    data_dir = tmp_path_factory.mktemp("data")
    db_path = data_dir / "lenon.db"
    upload_dir = data_dir / "uploads"
    try:
        port = _find_free_port()
    except RuntimeError as exc:
        pytest.skip(str(exc))
    env = os.environ.copy()
    env.update(
        {
            "ROBYN_HOST": "127.0.0.1",
            "ROBYN_PORT": str(port),
            "ROBYN_SECURE_COOKIES": "0",
            "ROBYN_SECRET_KEY": "integration-test-secret",
            "LENON_DB_PATH": str(db_path),
            "LENON_UPLOAD_DIR": str(upload_dir),
            "LENON_LOG_LEVEL": "WARNING",
        }
    )
    proc = subprocess.Popen(
        ["robyn", "app.py", "--log-level", "ERROR"],
        cwd=repo_root,
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        text=True,
    )
    try:
        _wait_for_server(f"http://127.0.0.1:{port}", proc)
        yield ServerInfo(
            base_url=f"http://127.0.0.1:{port}", db_path=db_path, upload_dir=upload_dir
        )
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:  # pragma: no cover - safety net
            proc.kill()


# Service-level fixtures backed by a throwaway sqlite file


@dataclass
class Services:
    db: Database
    directory: AccountDirectory
    authorizer: Authorizer
    sessions: SessionBinder
    administration: AccountAdministration
    store: UploadStore
    galleries: GalleryService


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "test.db")
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def services(db: Database, tmp_path: Path) -> Services:
    directory = AccountDirectory(db, require_approval=True)
    authorizer = Authorizer(db, directory)
    store = UploadStore(tmp_path / "uploads", "/uploads")
    store.ensure_root()
    return Services(
        db=db,
        directory=directory,
        authorizer=authorizer,
        sessions=SessionBinder(
            db, directory, SessionTokenSigner("unit-test-secret"), idle_seconds=3600
        ),
        administration=AccountAdministration(directory, authorizer),
        store=store,
        galleries=GalleryService(db, authorizer, store),
    )
