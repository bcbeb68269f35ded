"""Shared test fixtures for dropkick."""

import json
import os
from pathlib import Path
import subprocess
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import pytest
import requests

from dropkick import command
from dropkick.command import CommandError
from dropkick.nix import BuildProvenance, InputRevision


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------


class RecordingRunner:
    """
    Stand-in for ``dropkick.command.run`` that records every command line.

    ``stdout`` maps a program name to the text it prints, ``hooks`` maps a
    program name to a callable run with the argv (for side effects such as
    creating files), and ``fail_when`` predicates make matching commands exit 1.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.sudo_calls: List[bool] = []
        self.stdout: Dict[str, str] = {}
        self.hooks: Dict[str, Callable[[List[str]], None]] = {}
        self.failures: List[Callable[[List[str]], bool]] = []

    def fail_when(self, predicate: Callable[[List[str]], bool]) -> None:
        self.failures.append(predicate)

    def __call__(
        self,
        argv: Any,
        *,
        cwd: Any = None,
        env: Any = None,
        capture: bool = False,
        sudo: bool = False,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        argv = [os.fspath(arg) for arg in argv]
        self.calls.append(argv)
        self.sudo_calls.append(sudo)

        if any(predicate(argv) for predicate in self.failures):
            if check:
                raise CommandError(argv, 1, "simulated failure")
            return subprocess.CompletedProcess(argv, 1, stdout="", stderr="simulated failure")

        hook = self.hooks.get(argv[0])
        if hook is not None:
            hook(argv)
        return subprocess.CompletedProcess(argv, 0, stdout=self.stdout.get(argv[0], ""), stderr="")

    def programs(self) -> List[str]:
        return [" ".join(call[:2]) if call[0] == "kpartx" else call[0] for call in self.calls]


@pytest.fixture
def runner(monkeypatch: pytest.MonkeyPatch) -> RecordingRunner:
    """Replace dropkick.command.run with a RecordingRunner."""
    recording = RecordingRunner()
    monkeypatch.setattr(command, "run", recording)
    return recording


KPARTX_OUTPUT = (
    "add map loop0p1 (253:0): 0 4384735 linear 7:0 227328\n"
    "add map loop0p14 (253:1): 0 8192 linear 7:0 2048\n"
    "add map loop0p15 (253:2): 0 217088 linear 7:0 10240\n"
)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class FakeResponse:
    """Just enough of requests.Response for the code under test."""

    def __init__(
        self,
        status_code: int = 200,
        content: bytes = b"",
        json_data: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.status_code = status_code
        self.json_data = json_data
        if json_data is not None and not content:
            content = json.dumps(json_data).encode("utf-8")
        self.content = content
        self.headers = headers or {}
        self.reason = "OK" if status_code < 400 else "Error"
        self.closed = False

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def json(self) -> Any:
        if self.json_data is None:
            raise ValueError("no JSON body")
        return self.json_data

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        for offset in range(0, len(self.content), chunk_size):
            yield self.content[offset:offset + chunk_size]

    def close(self) -> None:
        self.closed = True


Route = Union[FakeResponse, List[FakeResponse], Callable[..., FakeResponse]]


class FakeSession:
    """
    Minimal requests.Session replacement.

    ``routes`` maps a URL (for ``get``) or a ``(method, url)`` pair (for
    ``request``) to a response, a list of responses served in order, or a
    callable producing one.
    """

    def __init__(self) -> None:
        self.headers: Dict[str, str] = {}
        self.routes: Dict[Any, Route] = {}
        self.calls: List[Tuple[str, str, Any, Any]] = []

    def _respond(self, key: Any, **kwargs: Any) -> FakeResponse:
        route = self.routes.get(key)
        if route is None:
            return FakeResponse(status_code=404, json_data={"message": f"no route for {key}"})
        if isinstance(route, list):
            return route.pop(0)
        if callable(route):
            return route(**kwargs)
        return route

    def get(self, url: str, stream: bool = False, timeout: Any = None) -> FakeResponse:
        self.calls.append(("GET", url, None, None))
        return self._respond(url)

    def request(
        self,
        method: str,
        url: str,
        params: Any = None,
        json: Any = None,
        timeout: Any = None,
    ) -> FakeResponse:
        self.calls.append((method, url, params, json))
        return self._respond((method, url), params=params, json=json)

    def urls(self) -> List[str]:
        return [call[1] for call in self.calls]


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


# ---------------------------------------------------------------------------
# Build provenance
# ---------------------------------------------------------------------------


STORE_HASH = "0123456789abcdfghijklmnpqrsvwxyz"


@pytest.fixture
def provenance() -> BuildProvenance:
    """Provenance of a typical build."""
    return BuildProvenance(
        package_name="hello-service",
        package_version="1.2.3",
        store_hash=STORE_HASH,
        inputs={
            "nixpkgs": InputRevision(last_modified=1700000000, rev="abc123"),
            "flake-utils": InputRevision(last_modified=1690000000),
        },
        nixos_version="23.11.20240101.abcdef",
    )


@pytest.fixture
def service_binary(tmp_path: Path) -> Path:
    """An executable file standing in for the service."""
    path = tmp_path / "hello-service"
    path.write_bytes(b"\x7fELF fake binary")
    path.chmod(0o755)
    return path
