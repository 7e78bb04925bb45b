from __future__ import annotations

import itertools

import pytest

import sandbox_sync_server as ss


class FakeRemote(ss.RemoteClient):
    """In-memory sandbox: a directory set, a file map and fake PTYs."""

    def __init__(self, base: str = "/home/user", sandbox_id: str = "sbx-test"):
        self.sandbox_id = sandbox_id
        self.base = base
        self.dirs: set[str] = {base}
        self.files: dict[str, str] = {}
        self.calls: list[tuple] = []
        # (op, path) pairs that raise RemoteError; path "*" matches everything
        self.fail: set[tuple[str, str]] = set()
        self.sessions: dict[int, dict] = {}
        self.killed: list[int] = []
        self.inputs: list[tuple[int, bytes]] = []
        self.commands: list[tuple[str, bool]] = []
        self.closed = False
        self._pids = itertools.count(100)

    def _check(self, op: str, path: str = "") -> None:
        self.calls.append((op, path))
        if (op, path) in self.fail or (op, "*") in self.fail:
            raise ss.RemoteError(f"{op} {path}: injected failure")

    def add_file(self, path: str, content: str = "") -> None:
        parts = path.split("/")
        for i in range(2, len(parts)):
            d = "/".join(parts[:i])
            if d.startswith(self.base):
                self.dirs.add(d)
        self.files[path] = content

    def add_dir(self, path: str) -> None:
        self.dirs.add(path)

    async def write_file(self, path, content):
        self._check("write_file", path)
        self.files[path] = content

    async def make_dir(self, path):
        self._check("make_dir", path)
        if path in self.dirs:
            raise ss.DirectoryExists(path)
        self.dirs.add(path)

    async def remove_file(self, path):
        self._check("remove_file", path)
        self.files = {
            p: c for p, c in self.files.items() if p != path and not p.startswith(path + "/")
        }
        self.dirs = {d for d in self.dirs if d != path and not d.startswith(path + "/")}

    async def read_file(self, path):
        self._check("read_file", path)
        if path not in self.files:
            raise ss.RemoteError(f"read {path}: no such file")
        return self.files[path]

    async def list_dir(self, path):
        self._check("list_dir", path)
        if path not in self.dirs:
            raise ss.RemoteError(f"list {path}: no such directory")
        prefix = path.rstrip("/") + "/"
        entries = [
            ss.RemoteEntry(d[len(prefix):], True)
            for d in self.dirs
            if d.startswith(prefix) and "/" not in d[len(prefix):]
        ]
        entries += [
            ss.RemoteEntry(f[len(prefix):], False)
            for f in self.files
            if f.startswith(prefix) and "/" not in f[len(prefix):]
        ]
        return sorted(entries)

    async def spawn_session(self, cols, rows, on_data):
        self._check("spawn_session")
        pid = next(self._pids)
        self.sessions[pid] = {"cols": cols, "rows": rows, "on_data": on_data}
        return ss.SessionHandle(pid)

    async def send_input(self, handle, data):
        self._check("send_input", str(handle.pid))
        self.inputs.append((handle.pid, data))

    async def resize(self, handle, cols, rows):
        self._check("resize", str(handle.pid))
        self.sessions[handle.pid]["cols"] = cols
        self.sessions[handle.pid]["rows"] = rows

    async def kill_session(self, handle):
        self._check("kill_session", str(handle.pid))
        self.killed.append(handle.pid)
        self.sessions.pop(handle.pid, None)

    async def run_command(self, cmd, background=False):
        self._check("run_command", cmd)
        self.commands.append((cmd, background))
        return {"stdout": f"ran {cmd}", "stderr": "", "exit_code": 0, "duration_ms": 1.0}

    async def close(self):
        self.closed = True

    def preview_url(self, port):
        return f"https://{port}-{self.sandbox_id}.e2b.app"

    def emit(self, pid: int, data) -> None:
        """Deliver PTY output as the sandbox would."""
        if isinstance(data, str):
            data = data.encode()
        self.sessions[pid]["on_data"](data)

    def ops(self, *names: str) -> list[tuple]:
        return [c for c in self.calls if c[0] in names]


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def connection(remote: FakeRemote) -> ss.RemoteConnection:
    conn = ss.RemoteConnection()
    conn.attach(remote)
    return conn


@pytest.fixture
def workspace(remote: FakeRemote, monkeypatch: pytest.MonkeyPatch):
    """Workspace whose connect() returns the fake remote. Polling is slowed down."""
    monkeypatch.setattr(ss, "POLL_INTERVAL", 3600.0)
    monkeypatch.setattr(ss, "SYNC_DEBOUNCE", 0.05)
    monkeypatch.setattr(ss, "PULL_COALESCE_WINDOW", 0.01)
    monkeypatch.setenv("E2B_API_KEY", "test-key")
    factory_calls: list[dict] = []

    async def factory(**kwargs):
        factory_calls.append(kwargs)
        return remote

    ws = ss.Workspace(client_factory=factory)
    ws.factory_calls = factory_calls
    return ws
