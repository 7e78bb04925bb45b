#!/usr/bin/env python3
"""MCP server that keeps a local virtual file tree in sync with an E2B sandbox."""

import asyncio
import codecs
import collections
import dataclasses
import inspect
import itertools
import logging
import os
import re
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, NamedTuple, Optional, Union

from e2b import AsyncSandbox, CommandExitException, FileType
from e2b.sandbox.commands.command_handle import PtySize
from mcp.server.fastmcp import FastMCP

# ── Logging (stderr only — stdout is MCP protocol) ──────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("sandbox-sync")

# ── Config ───────────────────────────────────────────────────────────────

# Every derived remote path lives under this prefix
BASE_PATH = "/home/user"
ROOT_ID = "root"

# Sandbox lifetime requested from E2B (seconds)
SANDBOX_TIMEOUT = 60 * 60

# Change poller
POLL_INTERVAL = 2.0  # seconds between remote listings
DIR_FINGERPRINT = -1

# Prompt-triggered pull: quiet time after the last prompt before pulling
SYNC_DEBOUNCE = 1.5
# Pull requests landing inside this window share one pull
PULL_COALESCE_WINDOW = 0.1

# Feed remote created/modified events into a merge pull
MERGE_ON_REMOTE_CHANGE = False

# Terminals
DEFAULT_COLS = 80
DEFAULT_ROWS = 24
SCROLLBACK_LIMIT = 200_000  # characters kept per terminal

CHANGE_LOG_SIZE = 200
MAX_OUTPUT = 50_000


# ── Helpers ──────────────────────────────────────────────────────────────


def _humanize_bytes(n: int) -> str:
    v = float(n)
    for unit in ("B", "KB", "MB"):
        if v < 1024:
            return f"{v:.0f}{unit}" if unit == "B" else f"{v:.1f}{unit}"
        v /= 1024
    return f"{v:.1f}GB"


def _truncate(text: str, limit: int = MAX_OUTPUT) -> str:
    if len(text) <= limit:
        return text
    total = _humanize_bytes(len(text.encode()))
    return (
        text[-limit:]
        + f"\n[truncated — {total} total, showing last {_humanize_bytes(limit)}]"
    )


def _join_path(base: str, parts) -> str:
    parts = list(parts)
    if not parts:
        return base
    return base.rstrip("/") + "/" + "/".join(parts)


def _parent_path(path: str) -> str:
    parent = path.rsplit("/", 1)[0]
    return parent or "/"


# ── Errors ───────────────────────────────────────────────────────────────


class RemoteUnavailable(RuntimeError):
    """No sandbox is connected."""


class RemoteError(RuntimeError):
    """The sandbox rejected a call."""


class DirectoryExists(RemoteError):
    pass


class StructuralError(RuntimeError):
    """A tree invariant is violated (cycle, orphan, non-folder parent)."""


class UnknownNode(KeyError):
    pass


# ── Virtual file tree ────────────────────────────────────────────────────


class NodeKind(str, Enum):
    FILE = "file"
    FOLDER = "folder"


@dataclass
class Node:
    id: str
    parent_id: Optional[str]
    name: str
    kind: NodeKind
    content: Optional[str] = None  # files only
    expanded: Optional[bool] = None  # folders only

    @property
    def is_folder(self) -> bool:
        return self.kind is NodeKind.FOLDER


def _make_node(
    node_id: str,
    parent_id: Optional[str],
    name: str,
    kind: NodeKind,
    content: Optional[str] = None,
) -> Node:
    if kind is NodeKind.FOLDER:
        return Node(node_id, parent_id, name, kind, expanded=True)
    return Node(node_id, parent_id, name, kind, content=content or "")


class FileTree:
    """
    In-memory namespace of the local workspace.

    Pure data: no I/O happens here. Paths are derived from parent pointers,
    never stored. The open-file set and active id live alongside the nodes
    so deletions and replacements can keep them consistent.
    """

    def __init__(
        self,
        base_path: Optional[str] = None,
        root_id: str = ROOT_ID,
        id_prefix: str = "node",
    ):
        self.base_path = base_path or BASE_PATH
        self.root_id = root_id
        self._nodes: dict[str, Node] = {
            root_id: _make_node(root_id, None, "root", NodeKind.FOLDER)
        }
        self._ids = itertools.count(1)
        self._id_prefix = id_prefix
        self.open_files: list[str] = []
        self.active_id: Optional[str] = None

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def root(self) -> Node:
        return self._nodes[self.root_id]

    def get(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise UnknownNode(node_id) from None

    def nodes(self, include_root: bool = False) -> list[Node]:
        return [
            n for n in self._nodes.values() if include_root or n.id != self.root_id
        ]

    def _next_id(self) -> str:
        while True:
            node_id = f"{self._id_prefix}-{next(self._ids)}"
            if node_id not in self._nodes:
                return node_id

    def _check_parent(self, nodes: dict[str, Node], parent_id: Optional[str]) -> None:
        parent = nodes.get(parent_id) if parent_id is not None else None
        if parent is None:
            raise StructuralError(f"parent {parent_id!r} does not exist")
        if not parent.is_folder:
            raise StructuralError(f"parent {parent.name!r} is not a folder")

    # ── Structure ────────────────────────────────────────────────────

    def create(
        self,
        parent_id: str,
        name: str,
        kind: Union[NodeKind, str],
        content: Optional[str] = None,
    ) -> Node:
        """Add a new node under ``parent_id``. Equal sibling names are allowed."""
        self._check_parent(self._nodes, parent_id)
        node = _make_node(self._next_id(), parent_id, name, NodeKind(kind), content)
        self._nodes[node.id] = node
        return node

    def insert(self, node: Node) -> Node:
        """Add a node built elsewhere (pull, merge), keeping its id."""
        if node.id in self._nodes:
            raise StructuralError(f"duplicate node id {node.id!r}")
        self._check_parent(self._nodes, node.parent_id)
        self._nodes[node.id] = node
        return node

    def children(self, parent_id: str) -> list[Node]:
        kids = [n for n in self._nodes.values() if n.parent_id == parent_id]
        kids.sort(key=lambda n: (not n.is_folder, n.name))
        return kids

    def find_child(self, parent_id: str, name: str) -> Optional[Node]:
        for node in self._nodes.values():
            if node.parent_id == parent_id and node.name == name:
                return node
        return None

    def update(self, node_id: str, content: str) -> Node:
        node = self.get(node_id)
        if node.is_folder:
            raise StructuralError(f"{node.name!r} is a folder")
        node.content = content
        return node

    def toggle(self, node_id: str) -> Node:
        node = self._folder(node_id)
        node.expanded = not node.expanded
        return node

    def expand(self, node_id: str) -> Node:
        node = self._folder(node_id)
        node.expanded = True
        return node

    def _folder(self, node_id: str) -> Node:
        node = self.get(node_id)
        if not node.is_folder:
            raise StructuralError(f"{node.name!r} is not a folder")
        return node

    def descendants(self, node_id: str) -> list[str]:
        """Transitive children of ``node_id`` in depth-first pre-order."""
        self.get(node_id)
        by_parent: dict[str, list[str]] = collections.defaultdict(list)
        for n in self._nodes.values():
            if n.parent_id is not None:
                by_parent[n.parent_id].append(n.id)

        out: list[str] = []
        seen = {node_id}
        stack = list(reversed(by_parent.get(node_id, [])))
        while stack:
            child = stack.pop()
            if child in seen:
                raise StructuralError(f"cycle detected at {child!r}")
            seen.add(child)
            out.append(child)
            stack.extend(reversed(by_parent.get(child, [])))
        return out

    def delete_subtree(self, node_id: str) -> list[str]:
        """
        Remove ``node_id`` and everything below it.

        All-or-nothing: the id set is computed before anything is removed.
        Returns exactly the removed ids.
        """
        if node_id == self.root_id:
            raise StructuralError("the root folder cannot be deleted")
        removed = [node_id] + self.descendants(node_id)
        for rid in removed:
            del self._nodes[rid]
        self._forget(set(removed))
        return removed

    def _forget(self, gone: set[str]) -> None:
        was_active = self.active_id in gone
        self.open_files = [fid for fid in self.open_files if fid not in gone]
        if was_active:
            self.active_id = self.open_files[-1] if self.open_files else None

    def resolve_path(self, node_id: str) -> str:
        node = self.get(node_id)
        parts: list[str] = []
        seen: set[str] = set()
        while node.id != self.root_id:
            if node.id in seen:
                raise StructuralError(f"cycle detected at {node.id!r}")
            seen.add(node.id)
            parts.append(node.name)
            parent = self._nodes.get(node.parent_id) if node.parent_id else None
            if parent is None:
                raise StructuralError(f"node {node.id!r} is not attached to the root")
            node = parent
        return _join_path(self.base_path, reversed(parts))

    def path_index(self) -> dict[str, str]:
        """Derived path -> node id. The first node wins on duplicate paths."""
        index: dict[str, str] = {}
        for node in self._nodes.values():
            index.setdefault(self.resolve_path(node.id), node.id)
        return index

    def node_at(self, path: str) -> Optional[Node]:
        node_id = self.path_index().get(path)
        return self._nodes[node_id] if node_id else None

    def adopt(self, fresh: "FileTree") -> None:
        """Swap every non-root node for ``fresh``'s and clear open/active state."""
        nodes = {self.root_id: self.root}
        for node in fresh.nodes():
            parent_id = self.root_id if node.parent_id == fresh.root_id else node.parent_id
            self._check_parent(nodes, parent_id)
            nodes[node.id] = dataclasses.replace(node, parent_id=parent_id)
        self._nodes = nodes
        self.open_files = []
        self.active_id = None

    # ── Open files ───────────────────────────────────────────────────

    def open_file(self, node_id: str) -> None:
        node = self.get(node_id)
        if node.is_folder:
            raise StructuralError(f"{node.name!r} is a folder")
        if node_id not in self.open_files:
            self.open_files.append(node_id)
        self.active_id = node_id

    def close_file(self, node_id: str) -> None:
        if node_id not in self.open_files:
            return
        self.open_files.remove(node_id)
        if self.active_id == node_id:
            self.active_id = self.open_files[-1] if self.open_files else None

    def set_active(self, node_id: Optional[str]) -> None:
        if node_id is None:
            self.active_id = None
        else:
            self.open_file(node_id)

    def active_file(self) -> Optional[Node]:
        return self._nodes.get(self.active_id) if self.active_id else None

    def render(self) -> str:
        lines = [self.base_path]

        def walk(parent_id: str, depth: int) -> None:
            for child in self.children(parent_id):
                indent = "  " * depth
                if child.is_folder:
                    marker = "" if child.expanded else " (collapsed)"
                    lines.append(f"{indent}{child.name}/{marker}")
                    if child.expanded:
                        walk(child.id, depth + 1)
                else:
                    marker = ""
                    if child.id == self.active_id:
                        marker = " *"
                    elif child.id in self.open_files:
                        marker = " +"
                    lines.append(f"{indent}{child.name}{marker}")

        walk(self.root_id, 1)
        return "\n".join(lines)


# ── Remote capability client ─────────────────────────────────────────────


class RemoteEntry(NamedTuple):
    name: str
    is_dir: bool


class SessionHandle(NamedTuple):
    pid: int


OutputCallback = Callable[[bytes], Any]


class RemoteClient(ABC):
    """
    Narrow capability surface of the remote execution environment.

    Every operation raises RemoteError when the call is rejected. The client
    keeps no local state about the namespace and enforces no ordering: calls
    may be in flight concurrently.
    """

    sandbox_id: Optional[str] = None

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None: ...

    @abstractmethod
    async def make_dir(self, path: str) -> None:
        """Create ``path``; raise DirectoryExists when it is already there."""

    @abstractmethod
    async def remove_file(self, path: str) -> None: ...

    @abstractmethod
    async def read_file(self, path: str) -> str: ...

    @abstractmethod
    async def list_dir(self, path: str) -> list[RemoteEntry]: ...

    @abstractmethod
    async def spawn_session(
        self, cols: int, rows: int, on_data: OutputCallback
    ) -> SessionHandle: ...

    @abstractmethod
    async def send_input(self, handle: SessionHandle, data: bytes) -> None: ...

    @abstractmethod
    async def resize(self, handle: SessionHandle, cols: int, rows: int) -> None: ...

    @abstractmethod
    async def kill_session(self, handle: SessionHandle) -> None: ...

    @abstractmethod
    async def run_command(self, cmd: str, background: bool = False) -> dict: ...

    async def close(self) -> None:
        """Tear down the remote environment. Default: nothing to release."""

    def preview_url(self, port: int) -> str:
        raise RemoteError("preview URLs are not supported by this sandbox")


class E2BRemoteClient(RemoteClient):
    """RemoteClient backed by an ``e2b.AsyncSandbox``."""

    def __init__(self, sandbox: AsyncSandbox):
        self._sandbox = sandbox
        self.sandbox_id = sandbox.sandbox_id
        # Command handles own the tasks that stream output; keep them alive.
        self._handles: dict[int, Any] = {}
        self._reapers: set[asyncio.Task] = set()

    @classmethod
    async def create(
        cls,
        api_key: Optional[str] = None,
        timeout: int = SANDBOX_TIMEOUT,
        template: Optional[str] = None,
    ) -> "E2BRemoteClient":
        kwargs: dict[str, Any] = {"api_key": api_key, "timeout": timeout}
        if template:
            kwargs["template"] = template
        try:
            sandbox = await AsyncSandbox.create(**kwargs)
        except Exception as e:
            raise RemoteError(f"Failed to create sandbox: {e}") from e
        return cls(sandbox)

    async def _call(self, what: str, awaitable: Awaitable) -> Any:
        try:
            return await awaitable
        except Exception as e:
            raise RemoteError(f"{what}: {e}") from e

    async def write_file(self, path: str, content: str) -> None:
        await self._call(f"write {path}", self._sandbox.files.write(path, content))

    async def make_dir(self, path: str) -> None:
        created = await self._call(f"mkdir {path}", self._sandbox.files.make_dir(path))
        if created is False:
            raise DirectoryExists(f"mkdir {path}: already exists")

    async def remove_file(self, path: str) -> None:
        await self._call(f"remove {path}", self._sandbox.files.remove(path))

    async def read_file(self, path: str) -> str:
        return await self._call(f"read {path}", self._sandbox.files.read(path))

    async def list_dir(self, path: str) -> list[RemoteEntry]:
        entries = await self._call(f"list {path}", self._sandbox.files.list(path))
        return [RemoteEntry(e.name, e.type == FileType.DIR) for e in entries]

    async def spawn_session(
        self, cols: int, rows: int, on_data: OutputCallback
    ) -> SessionHandle:
        handle = await self._call(
            "pty create",
            self._sandbox.pty.create(
                size=PtySize(rows=rows, cols=cols),
                on_data=on_data,
                timeout=0,
            ),
        )
        self._handles[handle.pid] = handle
        return SessionHandle(handle.pid)

    async def send_input(self, handle: SessionHandle, data: bytes) -> None:
        await self._call(
            f"pty {handle.pid} input",
            self._sandbox.pty.send_stdin(handle.pid, data),
        )

    async def resize(self, handle: SessionHandle, cols: int, rows: int) -> None:
        await self._call(
            f"pty {handle.pid} resize",
            self._sandbox.pty.resize(handle.pid, PtySize(rows=rows, cols=cols)),
        )

    async def kill_session(self, handle: SessionHandle) -> None:
        self._handles.pop(handle.pid, None)
        await self._call(f"pty {handle.pid} kill", self._sandbox.pty.kill(handle.pid))

    async def run_command(self, cmd: str, background: bool = False) -> dict:
        t0 = time.perf_counter()
        try:
            result = await self._sandbox.commands.run(cmd, background=background)
        except CommandExitException as e:
            # Non-zero exit still carries the command's output
            result = e
        except Exception as e:
            raise RemoteError(f"run {cmd!r}: {e}") from e
        elapsed = round((time.perf_counter() - t0) * 1000, 1)
        if background:
            self._handles[result.pid] = result
            reaper = asyncio.ensure_future(self._reap(result))
            self._reapers.add(reaper)
            reaper.add_done_callback(self._reapers.discard)
            return {
                "stdout": f"Started PID {result.pid}",
                "stderr": "",
                "exit_code": 0,
                "duration_ms": elapsed,
            }
        return {
            "stdout": _truncate(result.stdout or ""),
            "stderr": _truncate(result.stderr or ""),
            "exit_code": result.exit_code,
            "duration_ms": elapsed,
        }

    async def _reap(self, handle: Any) -> None:
        """Forget a background command's handle once it exits."""
        try:
            await handle.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.debug(f"Background PID {handle.pid} ended: {e}")
        finally:
            self._handles.pop(handle.pid, None)

    async def close(self) -> None:
        for reaper in list(self._reapers):
            reaper.cancel()
        self._handles.clear()
        await self._call("kill sandbox", self._sandbox.kill())

    def preview_url(self, port: int) -> str:
        return f"https://{self._sandbox.get_host(port)}"


class RemoteConnection:
    """
    The single handle to the remote shared by push, pull, poller and
    terminals. Reading ``client`` while disconnected raises
    RemoteUnavailable instead of handing out a null.
    """

    def __init__(self):
        self._client: Optional[RemoteClient] = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> RemoteClient:
        if self._client is None:
            raise RemoteUnavailable("No sandbox connected")
        return self._client

    @property
    def sandbox_id(self) -> Optional[str]:
        return self._client.sandbox_id if self._client else None

    def attach(self, client: RemoteClient) -> None:
        self._client = client

    async def release(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()


@dataclass
class RemoteFile:
    path: str
    is_dir: bool
    content: str = ""


async def _walk_remote(
    client: RemoteClient, root: str, strict: bool = False
) -> list[RemoteFile]:
    """
    Depth-first listing of everything below ``root``, files with content.

    A failure to list ``root`` always propagates. Deeper listing failures
    propagate when ``strict``, otherwise that directory is skipped. An
    unreadable file is reported present with empty content.
    """
    found: list[RemoteFile] = []

    async def visit(path: str, required: bool) -> None:
        try:
            entries = await client.list_dir(path)
        except RemoteError as e:
            if required:
                raise
            log.warning(f"Could not list {path}: {e}")
            return
        for entry in entries:
            child = _join_path(path, [entry.name])
            if entry.is_dir:
                found.append(RemoteFile(child, True))
                await visit(child, strict)
                continue
            try:
                content = await client.read_file(child)
            except RemoteError as e:
                log.warning(f"Could not read {child}: {e}")
                content = ""
            found.append(RemoteFile(child, False, content))

    await visit(root, True)
    return found


# ── Reconciliation engine ────────────────────────────────────────────────


class Reconciler:
    """
    Moves state between the local tree and the sandbox.

    Push and pull are best-effort batches, never transactions. The tree has
    a single writer (this object, on the event loop); concurrent push and
    pull are allowed and settle by the merge rule.
    """

    def __init__(self, tree: FileTree, connection: RemoteConnection):
        self.tree = tree
        self.connection = connection
        self.status = "idle"
        self.last_sync: Optional[float] = None
        self.last_error: Optional[str] = None
        self._inflight = 0
        self._pull_passes = itertools.count(1)
        self._queued_pull: Optional[asyncio.Task] = None
        self.pulls = 0

    @property
    def base_path(self) -> str:
        return self.tree.base_path

    @property
    def syncing(self) -> bool:
        return self._inflight > 0

    def _begin(self) -> None:
        self._inflight += 1
        self.status = "syncing"

    def _end(self, ok: bool, error: Optional[str] = None) -> None:
        self._inflight = max(0, self._inflight - 1)
        if ok:
            self.status = "success"
            self.last_sync = time.time()
        else:
            self.status = "error"
            self.last_error = error

    def _client(self, action: str) -> Optional[RemoteClient]:
        try:
            return self.connection.client
        except RemoteUnavailable as e:
            log.warning(f"{action} skipped: {e}")
            self.status = "error"
            self.last_error = str(e)
            return None

    # ── Push ─────────────────────────────────────────────────────────

    async def _push_one(self, client: RemoteClient, node: Node, path: str) -> bool:
        try:
            if node.is_folder:
                await client.make_dir(path)
            else:
                await client.write_file(path, node.content or "")
        except DirectoryExists:
            return True
        except RemoteError as e:
            log.warning(f"Push failed for {path}: {e}")
            return False
        return True

    async def push_all(self, tree: Optional[FileTree] = None) -> bool:
        """
        Write every non-root node to the sandbox, folders before files.

        Every node is attempted; returns True only if all of them succeeded.
        """
        tree = tree or self.tree
        client = self._client("Push")
        if client is None:
            return False

        # Stable partition: folders keep their creation order, so parents
        # are issued before their subfolders.
        ordered = sorted(tree.nodes(), key=lambda n: not n.is_folder)
        self._begin()
        failed = 0
        for node in ordered:
            try:
                path = tree.resolve_path(node.id)
            except StructuralError as e:
                log.warning(f"Push skipped {node.name!r}: {e}")
                failed += 1
                continue
            if not await self._push_one(client, node, path):
                failed += 1

        log.info(
            f"Push: {len(ordered) - failed}/{len(ordered)} items -> "
            f"{self.connection.sandbox_id}:{self.base_path}"
        )
        if failed:
            self._end(False, f"{failed} of {len(ordered)} items failed to push")
            return False
        self._end(True)
        return True

    async def push_node(self, node_id: str) -> bool:
        """Push one node after it was created or edited."""
        client = self._client("Push")
        if client is None:
            return False
        node = self.tree.get(node_id)
        path = self.tree.resolve_path(node_id)
        self._begin()
        ok = await self._push_one(client, node, path)
        self._end(ok, None if ok else f"Could not push {path}")
        return ok

    async def remove_path(self, path: str) -> bool:
        client = self._client("Remove")
        if client is None:
            return False
        self._begin()
        try:
            await client.remove_file(path)
        except RemoteError as e:
            log.warning(f"Remove failed for {path}: {e}")
            self._end(False, str(e))
            return False
        self._end(True)
        return True

    # ── Pull ─────────────────────────────────────────────────────────

    async def pull_all(self) -> Optional[FileTree]:
        """
        Read the whole sandbox namespace into a brand-new tree.

        Returns None when nothing could be listed; the caller decides between
        replace_with and merge_with.
        """
        client = self._client("Pull")
        if client is None:
            return None
        self._begin()
        try:
            found = await _walk_remote(client, self.base_path)
        except RemoteError as e:
            log.warning(f"Pull failed: {e}")
            self._end(False, str(e))
            return None
        fresh = self._build_tree(found)
        self.pulls += 1
        self._end(True)
        log.info(f"Pull: {len(found)} items from {self.connection.sandbox_id}")
        return fresh

    def _build_tree(self, found: list[RemoteFile]) -> FileTree:
        pass_no = next(self._pull_passes)
        ids = itertools.count(1)
        fresh = FileTree(self.base_path, self.tree.root_id)
        by_path = {self.base_path: fresh.root_id}
        for item in found:
            parent_id = by_path.get(_parent_path(item.path), fresh.root_id)
            node_id = f"pull{pass_no}-{next(ids)}"
            by_path[item.path] = node_id
            kind = NodeKind.FOLDER if item.is_dir else NodeKind.FILE
            name = item.path.rsplit("/", 1)[-1]
            fresh.insert(_make_node(node_id, parent_id, name, kind, item.content))
        return fresh

    def replace_with(self, fresh: FileTree) -> None:
        self.tree.adopt(fresh)

    def merge_with(self, fresh: FileTree) -> dict:
        """
        Path-keyed last-writer-wins merge of ``fresh`` into the local tree.

        A path already present locally keeps its local id (so open tabs
        survive) and takes the remote file content. A new path is inserted
        under the local node for its parent path. Nothing is ever removed,
        moved or renamed.
        """
        local_by_path = self.tree.path_index()
        id_map = {fresh.root_id: self.tree.root_id}
        added = updated = 0

        for node in fresh.nodes():
            path = fresh.resolve_path(node.id)
            local_id = local_by_path.get(path)

            if local_id is None:
                parent_id = id_map.get(node.parent_id, node.parent_id)
                try:
                    self.tree.insert(dataclasses.replace(node, parent_id=parent_id))
                except StructuralError as e:
                    log.warning(f"Merge skipped {path}: {e}")
                    continue
                local_by_path[path] = node.id
                id_map[node.id] = node.id
                added += 1
                continue

            local = self.tree.get(local_id)
            if local.kind is not node.kind:
                log.warning(
                    f"Merge: {path} is a {local.kind.value} locally and a "
                    f"{node.kind.value} remotely, keeping local"
                )
                continue
            id_map[node.id] = local_id
            if node.kind is NodeKind.FILE and local.content != node.content:
                local.content = node.content
                updated += 1

        return {"added": added, "updated": updated}

    async def sync_now(self) -> bool:
        """Pull and merge immediately."""
        fresh = await self.pull_all()
        if fresh is None:
            return False
        result = self.merge_with(fresh)
        if result["added"] or result["updated"]:
            log.info(f"Merge: {result['added']} added, {result['updated']} updated")
        return True

    def request_pull(self) -> asyncio.Task:
        """
        Schedule a pull+merge. Requests arriving within
        PULL_COALESCE_WINDOW of the first one share the same pull.
        """
        if self._queued_pull is None:
            loop = asyncio.get_running_loop()
            self._queued_pull = loop.create_task(self._run_queued_pull())
        return self._queued_pull

    async def cancel_pending(self) -> None:
        """Drop a queued pull that has not started yet."""
        task = self._queued_pull
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_queued_pull(self) -> bool:
        try:
            await asyncio.sleep(PULL_COALESCE_WINDOW)
        finally:
            self._queued_pull = None
        return await self.sync_now()


# ── Change poller ────────────────────────────────────────────────────────


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class ChangeEvent(NamedTuple):
    kind: ChangeKind
    path: str
    is_directory: bool


ChangeCallback = Callable[[ChangeEvent], Any]


class ChangeSource(ABC):
    """Anything that reports remote namespace changes to subscribers."""

    def __init__(self):
        self._subscribers: list[ChangeCallback] = []

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: ChangeEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                log.warning(
                    f"Change subscriber failed on {event.kind.value} {event.path}: {e}"
                )

    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...


class ChangePoller(ChangeSource):
    """
    Polling stand-in for a change feed.

    Each tick lists the sandbox recursively, fingerprints every path
    (content length for files, DIR_FINGERPRINT for directories) and diffs
    against the previous tick. A failed tick leaves the previous snapshot
    untouched.
    """

    def __init__(
        self,
        connection: RemoteConnection,
        base_path: Optional[str] = None,
        interval: Optional[float] = None,
    ):
        super().__init__()
        self.connection = connection
        self.base_path = base_path or BASE_PATH
        self.interval = POLL_INTERVAL if interval is None else interval
        self._fingerprints: dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.failed_ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def fingerprints(self) -> dict[str, int]:
        return dict(self._fingerprints)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._poll_loop())
        log.info(f"Change poller started ({self.base_path}, every {self.interval}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._fingerprints.clear()
        if task is not None:
            log.info("Change poller stopped")

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                return
            except Exception as e:
                log.warning(f"Change poll error: {e}")
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                return

    async def tick(self) -> Optional[list[ChangeEvent]]:
        """Run one poll. Returns the emitted events, or None if the tick failed."""
        try:
            found = await _walk_remote(self.connection.client, self.base_path, strict=True)
        except (RemoteUnavailable, RemoteError) as e:
            self.failed_ticks += 1
            log.warning(f"Change poll skipped: {e}")
            return None

        previous = self._fingerprints
        current = {
            f.path: DIR_FINGERPRINT if f.is_dir else len(f.content) for f in found
        }

        events = [
            ChangeEvent(ChangeKind.CREATED, path, fp == DIR_FINGERPRINT)
            for path, fp in current.items()
            if path not in previous
        ]
        events += [
            ChangeEvent(ChangeKind.MODIFIED, path, fp == DIR_FINGERPRINT)
            for path, fp in current.items()
            if path in previous and previous[path] != fp
        ]
        events += [
            ChangeEvent(ChangeKind.DELETED, path, fp == DIR_FINGERPRINT)
            for path, fp in previous.items()
            if path not in current
        ]

        self._fingerprints = current
        self.ticks += 1
        for event in events:
            self._emit(event)
        return events


# ── Terminal sessions ────────────────────────────────────────────────────

PROMPT_PATTERNS = [
    re.compile(r"\$\s*$"),
    re.compile(r">\s*$"),
    re.compile(r"#\s*$"),
    re.compile(r"\]\s*$"),
    re.compile(r"~\]\$"),
]


def detect_prompt(text: str) -> bool:
    """True when ``text`` ends like a shell prompt. A hint, not proof."""
    return any(p.search(text) for p in PROMPT_PATTERNS)


class BufferSurface:
    """Display surface that keeps a bounded scrollback of terminal output."""

    def __init__(
        self,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        limit: Optional[int] = None,
    ):
        self.cols = cols
        self.rows = rows
        self.disposed = False
        self._limit = limit or SCROLLBACK_LIMIT
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._cursor = 0

    def write(self, data: bytes) -> None:
        if self.disposed:
            return
        self._buffer += self._decoder.decode(data)
        overflow = len(self._buffer) - self._limit
        if overflow > 0:
            self._buffer = self._buffer[overflow:]
            self._cursor = max(0, self._cursor - overflow)

    def read(self, new_only: bool = True) -> str:
        start = self._cursor if new_only else 0
        self._cursor = len(self._buffer)
        return self._buffer[start:]

    def resize(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows

    def dispose(self) -> None:
        self.disposed = True
        self._buffer = ""
        self._cursor = 0


@dataclass
class TerminalSession:
    id: str
    name: str
    surface: BufferSurface
    handle: Optional[SessionHandle] = None
    ready: bool = False
    prompts_seen: int = 0
    created_at: float = field(default_factory=time.time)
    _timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class SessionMultiplexer:
    """
    Owns every interactive terminal against the sandbox.

    Keystrokes go straight to the remote PTY (no local echo). Output is
    written to the session's surface and scanned for a shell prompt; a
    prompt (re)starts that session's debounce timer, and when the timer
    expires ``on_sync`` is called once.
    """

    def __init__(
        self,
        connection: RemoteConnection,
        on_sync: Optional[Callable[[], Any]] = None,
        debounce: Optional[float] = None,
    ):
        self.connection = connection
        self._on_sync = on_sync
        self.debounce = SYNC_DEBOUNCE if debounce is None else debounce
        self._sessions: dict[str, TerminalSession] = {}
        self._counter = itertools.count(1)
        self._tasks: set[asyncio.Future] = set()
        self.active_id: Optional[str] = None
        self.auto_sync = True
        self.syncs_triggered = 0

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[TerminalSession]:
        return self._sessions.get(session_id)

    def sessions(self) -> list[TerminalSession]:
        return list(self._sessions.values())

    def set_active(self, session_id: str) -> bool:
        if session_id not in self._sessions:
            return False
        self.active_id = session_id
        return True

    def _fall_back(self, closed_id: str) -> None:
        if self.active_id == closed_id:
            self.active_id = next(reversed(self._sessions), None)

    async def create_session(self, surface: Optional[BufferSurface] = None) -> Optional[str]:
        try:
            client = self.connection.client
        except RemoteUnavailable as e:
            log.warning(f"Cannot open terminal: {e}")
            return None

        n = next(self._counter)
        session_id = f"term-{n}"
        session = TerminalSession(session_id, f"Terminal {n}", surface or BufferSurface())
        self._sessions[session_id] = session
        self.active_id = session_id

        try:
            handle = await client.spawn_session(
                session.surface.cols,
                session.surface.rows,
                lambda data: self.on_output(session_id, data),
            )
        except RemoteError as e:
            log.warning(f"Could not open {session.name}: {e}")
            if self._sessions.pop(session_id, None) is not None:
                session.surface.dispose()
                self._fall_back(session_id)
            return None

        if session_id not in self._sessions:
            # Closed while the PTY was being created
            try:
                await client.kill_session(handle)
            except RemoteError as e:
                log.warning(f"Could not kill orphaned PTY {handle.pid}: {e}")
            return None

        session.handle = handle
        session.ready = True
        log.info(f"Opened {session.name} [{session_id}] PID {handle.pid}")
        return session_id

    def on_output(self, session_id: str, data: Union[bytes, str]) -> bool:
        """Route one output chunk. Chunks for closed sessions are dropped."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if isinstance(data, str):
            data = data.encode()
        session.surface.write(data)
        if detect_prompt(data.decode(errors="replace")):
            session.prompts_seen += 1
            log.debug(f"Prompt detected in {session.name}")
            if self.auto_sync and self._on_sync is not None:
                self._arm(session)
        return True

    def _arm(self, session: TerminalSession) -> None:
        session.cancel_timer()
        loop = asyncio.get_running_loop()
        session._timer = loop.call_later(self.debounce, self._fire, session.id)

    def _fire(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session._timer = None
        self._trigger_sync()

    def _trigger_sync(self) -> Any:
        if self._on_sync is None:
            return None
        self.syncs_triggered += 1
        result = self._on_sync()
        if inspect.isawaitable(result):
            result = asyncio.ensure_future(result)
            self._tasks.add(result)
            result.add_done_callback(self._tasks.discard)
        return result

    def sync_now(self) -> Any:
        """Manual sync: skip the heuristic and pull right away."""
        return self._trigger_sync()

    def set_auto_sync(self, enabled: bool) -> None:
        self.auto_sync = enabled
        if not enabled:
            for session in self._sessions.values():
                session.cancel_timer()

    async def send_keys(self, session_id: str, data: Union[bytes, str]) -> bool:
        session = self._sessions.get(session_id)
        if session is None or not session.ready:
            return False
        if isinstance(data, str):
            data = data.encode()
        try:
            await self.connection.client.send_input(session.handle, data)
        except (RemoteUnavailable, RemoteError) as e:
            log.warning(f"Input to {session.name} failed: {e}")
            return False
        return True

    async def resize(self, session_id: str, cols: int, rows: int) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.surface.resize(cols, rows)
        if not session.ready:
            return True
        try:
            await self.connection.client.resize(session.handle, cols, rows)
        except (RemoteUnavailable, RemoteError) as e:
            log.warning(f"Resize of {session.name} failed: {e}")
            return False
        return True

    async def resize_all(self, cols: int, rows: int) -> None:
        for session_id in list(self._sessions):
            await self.resize(session_id, cols, rows)

    async def close_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.cancel_timer()
        session.surface.dispose()
        self._fall_back(session_id)
        if session.handle is not None:
            try:
                await self.connection.client.kill_session(session.handle)
            except (RemoteUnavailable, RemoteError) as e:
                log.warning(f"Could not kill {session.name}: {e}")
        log.info(f"Closed {session.name} [{session_id}]")
        return True

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close_session(session_id)


# ── Workspace ────────────────────────────────────────────────────────────


ClientFactory = Callable[..., Awaitable[RemoteClient]]


class Workspace:
    """One local tree, one sandbox connection, and everything wired between."""

    def __init__(
        self,
        base_path: Optional[str] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.connection = RemoteConnection()
        self.tree = FileTree(base_path)
        self.reconciler = Reconciler(self.tree, self.connection)
        self.poller = ChangePoller(self.connection, self.tree.base_path)
        self.sessions = SessionMultiplexer(
            self.connection, on_sync=self.reconciler.request_pull
        )
        self._client_factory = client_factory or E2BRemoteClient.create
        self.connecting = False
        # Serializes connect and disconnect
        self._lifecycle_lock = asyncio.Lock()
        self.error: Optional[str] = None
        self.merge_on_remote_change = MERGE_ON_REMOTE_CHANGE
        self._changes: collections.deque = collections.deque(maxlen=CHANGE_LOG_SIZE)
        self.poller.subscribe(self._on_change)

    @property
    def base_path(self) -> str:
        return self.tree.base_path

    # ── Connection lifecycle ─────────────────────────────────────────

    async def connect(self, api_key: Optional[str] = None, template: Optional[str] = None) -> bool:
        if self.connection.connected:
            return True
        async with self._lifecycle_lock:
            # Re-check after acquiring lock (an overlapping connect may have won)
            if self.connection.connected:
                return True
            return await self._connect(api_key, template)

    async def _connect(self, api_key: Optional[str], template: Optional[str]) -> bool:
        self.error = None
        api_key = api_key or os.environ.get("E2B_API_KEY")
        if not api_key:
            self.error = "No E2B API key (pass api_key or set E2B_API_KEY)"
            return False

        self.connecting = True
        try:
            client = await self._client_factory(
                api_key=api_key,
                timeout=SANDBOX_TIMEOUT,
                template=template or os.environ.get("E2B_TEMPLATE"),
            )
        except RemoteError as e:
            self.error = str(e)
            log.warning(f"Connect failed: {e}")
            return False
        finally:
            self.connecting = False

        self.connection.attach(client)
        log.info(f"Connected to sandbox {client.sandbox_id}")
        await self.reconciler.push_all()
        self.poller.start()
        await self.sessions.create_session()
        return True

    async def disconnect(self) -> None:
        # Waits for an in-flight connect so nothing it starts outlives the sandbox
        async with self._lifecycle_lock:
            await self._disconnect()

    async def _disconnect(self) -> None:
        sandbox_id = self.connection.sandbox_id
        await self.sessions.close_all()
        await self.poller.stop()
        await self.reconciler.cancel_pending()
        try:
            await self.connection.release()
        except RemoteError as e:
            log.warning(f"Error killing sandbox: {e}")
        if sandbox_id:
            log.info(f"Disconnected from sandbox {sandbox_id}")

    # ── Local edits ──────────────────────────────────────────────────

    async def create_node(self, parent_id: str, name: str, kind: Union[NodeKind, str]) -> Node:
        node = self.tree.create(parent_id, name, kind)
        self.tree.expand(parent_id)
        if not node.is_folder:
            self.tree.open_file(node.id)
        if self.connection.connected:
            await self.reconciler.push_node(node.id)
        return node

    async def edit_file(self, node_id: str, content: str) -> bool:
        """Apply a whole-buffer edit and push it. Returns whether the push landed."""
        self.tree.update(node_id, content)
        if not self.connection.connected:
            return False
        return await self.reconciler.push_node(node_id)

    async def delete_node(self, node_id: str) -> list[str]:
        path = self.tree.resolve_path(node_id)
        removed = self.tree.delete_subtree(node_id)
        if self.connection.connected:
            await self.reconciler.remove_path(path)
        return removed

    # ── Sync ─────────────────────────────────────────────────────────

    async def push(self) -> bool:
        return await self.reconciler.push_all()

    async def pull(self) -> bool:
        fresh = await self.reconciler.pull_all()
        if fresh is None:
            return False
        self.reconciler.replace_with(fresh)
        return True

    async def sync_now(self) -> bool:
        return await self.reconciler.sync_now()

    # ── Remote changes ───────────────────────────────────────────────

    def _on_change(self, event: ChangeEvent) -> None:
        self._changes.append((time.time(), event))
        if self.merge_on_remote_change and event.kind is not ChangeKind.DELETED:
            self.reconciler.request_pull()

    def changes(self, limit: int = 50) -> list[tuple[float, ChangeEvent]]:
        items = list(self._changes)
        return items[-limit:] if limit > 0 else items

    def status(self) -> dict:
        return {
            "connected": self.connection.connected,
            "connecting": self.connecting,
            "sandbox_id": self.connection.sandbox_id,
            "error": self.error,
            "base_path": self.base_path,
            "sync": {
                "status": self.reconciler.status,
                "syncing": self.reconciler.syncing,
                "last_sync": self.reconciler.last_sync,
                "last_error": self.reconciler.last_error,
            },
            "poller": {
                "running": self.poller.running,
                "interval": self.poller.interval,
                "paths": len(self.poller.fingerprints),
                "ticks": self.poller.ticks,
                "failed_ticks": self.poller.failed_ticks,
            },
            "terminals": {
                s.id: {
                    "name": s.name,
                    "ready": s.ready,
                    "pid": s.handle.pid if s.handle else None,
                    "size": f"{s.surface.cols}x{s.surface.rows}",
                    "prompts": s.prompts_seen,
                }
                for s in self.sessions.sessions()
            },
            "active_terminal": self.sessions.active_id,
            "auto_sync": self.sessions.auto_sync,
            "nodes": len(self.tree) - 1,
            "open_files": [self.tree.resolve_path(fid) for fid in self.tree.open_files],
        }


# ── MCP Server ───────────────────────────────────────────────────────────

mcp_server = FastMCP(
    "sandbox-sync",
    instructions=(
        "You edit files in a local workspace tree that mirrors an E2B sandbox. "
        "Use connect to start a sandbox (the local tree is pushed to it), "
        "create_file/create_folder/edit_file/delete to change files (each change "
        "is pushed immediately), and tree/read_file to inspect them. "
        "Use terminal_open/terminal_send/terminal_read for interactive shells; "
        "when a shell prompt reappears the workspace pulls sandbox changes "
        "automatically (toggle with auto_sync). Use sync_now to merge sandbox "
        "changes on demand, pull to replace the local tree with the sandbox's, "
        "push to write everything back, and changes to see what the poller saw. "
        "Paths are relative to the sandbox home directory."
    ),
)

workspace = Workspace()


def _abs_path(path: str) -> str:
    base = workspace.base_path
    if path == base or path.startswith(base.rstrip("/") + "/"):
        return path.rstrip("/") or "/"
    rel = path.strip("/")
    return _join_path(base, [rel] if rel else [])


def _lookup(path: str) -> Optional[Node]:
    return workspace.tree.node_at(_abs_path(path))


def _split_new(path: str) -> tuple[Optional[Node], str]:
    full = _abs_path(path)
    return workspace.tree.node_at(_parent_path(full)), full.rsplit("/", 1)[-1]


def _terminal_id(terminal: str) -> Optional[str]:
    return terminal or workspace.sessions.active_id


def _format_result(result: dict) -> str:
    parts = []
    if result["stdout"]:
        parts.append(result["stdout"])
    if result["stderr"]:
        parts.append(f"[stderr] {result['stderr']}")
    if result["exit_code"] != 0:
        parts.append(f"[exit code {result['exit_code']}]")
    parts.append(f"({result['duration_ms']}ms)")
    return "\n".join(parts)


def _sync_note(ok: bool) -> str:
    if ok:
        return ""
    if not workspace.connection.connected:
        return " (local only, no sandbox connected)"
    return f" (not synced: {workspace.reconciler.last_error})"


# ── Connection tools ─────────────────────────────────────────────────────


@mcp_server.tool()
async def connect(api_key: str = "", template: str = "") -> str:
    """
    Create an E2B sandbox and attach the workspace to it.

    The local tree is pushed, the change poller starts and a first terminal
    is opened.

    Args:
        api_key: E2B API key (defaults to the E2B_API_KEY environment variable)
        template: Optional sandbox template name

    Returns:
        Sandbox id and initial sync result.
    """
    if workspace.connection.connected:
        return f"Already connected to sandbox {workspace.connection.sandbox_id}"
    if not await workspace.connect(api_key or None, template or None):
        return f"Error: {workspace.error}"
    lines = [f"Connected to sandbox {workspace.connection.sandbox_id}"]
    lines.append(f"Initial push: {workspace.reconciler.status}")
    if workspace.sessions.active_id:
        lines.append(f"Terminal: {workspace.sessions.active_id}")
    return "\n".join(lines)


@mcp_server.tool()
async def disconnect() -> str:
    """
    Close every terminal, stop change polling and kill the sandbox.
    The local tree is kept.
    """
    if not workspace.connection.connected:
        return "Not connected"
    sandbox_id = workspace.connection.sandbox_id
    await workspace.disconnect()
    return f"Disconnected from sandbox {sandbox_id}"


@mcp_server.tool()
async def status() -> str:
    """
    Show connection, sync, poller and terminal status.
    """
    info = workspace.status()
    lines = []
    if info["connected"]:
        lines.append(f"Sandbox:  {info['sandbox_id']} ({info['base_path']})")
    else:
        lines.append("Sandbox:  not connected")
    if info["error"]:
        lines.append(f"Error:    {info['error']}")

    sync = info["sync"]
    sync_line = f"Sync:     {sync['status']}"
    if sync["last_sync"]:
        sync_line += f" (last {time.time() - sync['last_sync']:.0f}s ago)"
    if sync["status"] == "error" and sync["last_error"]:
        sync_line += f": {sync['last_error']}"
    lines.append(sync_line)

    poller = info["poller"]
    state = "running" if poller["running"] else "stopped"
    lines.append(
        f"Poller:   {state}, {poller['paths']} paths, "
        f"{poller['ticks']} ticks ({poller['failed_ticks']} failed)"
    )
    lines.append(f"Files:    {info['nodes']} nodes, {len(info['open_files'])} open")
    lines.append(f"Auto-sync: {'on' if info['auto_sync'] else 'off'}")

    if info["terminals"]:
        lines.append("Terminals:")
        for tid, t in info["terminals"].items():
            active = " *" if tid == info["active_terminal"] else ""
            state = f"pid:{t['pid']}" if t["ready"] else "initializing"
            lines.append(
                f"  {tid:8s} {t['name']}  {state}  {t['size']}  prompts:{t['prompts']}{active}"
            )
    return "\n".join(lines)


# ── File tools ───────────────────────────────────────────────────────────


@mcp_server.tool()
async def tree() -> str:
    """
    Show the local file tree. Folders first, then files, by name.
    Open files are marked "+", the active file "*".
    """
    return workspace.tree.render()


async def _create(path: str, kind: NodeKind, content: str = "") -> str:
    parent, name = _split_new(path)
    if not name:
        return "Error: a name is required"
    if parent is None or not parent.is_folder:
        return f"Error: parent folder of {path} does not exist"
    if workspace.tree.find_child(parent.id, name) is not None:
        return f"Error: {workspace.tree.resolve_path(parent.id)}/{name} already exists"
    node = await workspace.create_node(parent.id, name, kind)
    full = workspace.tree.resolve_path(node.id)
    ok = workspace.reconciler.status != "error"
    if kind is NodeKind.FILE and content:
        ok = await workspace.edit_file(node.id, content)
    return f"Created {kind.value} {full}{_sync_note(ok and workspace.connection.connected)}"


@mcp_server.tool()
async def create_file(path: str, content: str = "") -> str:
    """
    Create a file (and push it to the sandbox). The file is opened.

    Args:
        path: File path relative to the sandbox home (e.g., "src/index.ts")
        content: Initial content

    Returns:
        Confirmation with the full remote path.
    """
    return await _create(path, NodeKind.FILE, content)


@mcp_server.tool()
async def create_folder(path: str) -> str:
    """
    Create a folder (and make it in the sandbox).

    Args:
        path: Folder path relative to the sandbox home (e.g., "src")
    """
    return await _create(path, NodeKind.FOLDER)


@mcp_server.tool()
async def toggle_folder(path: str) -> str:
    """
    Expand or collapse a folder in the tree view.

    Args:
        path: Folder path
    """
    node = _lookup(path)
    if node is None or not node.is_folder:
        return f"Error: no folder {path}"
    workspace.tree.toggle(node.id)
    return f"{node.name}/ {'expanded' if node.expanded else 'collapsed'}"


@mcp_server.tool()
async def open_file(path: str) -> str:
    """
    Open a file as a tab and make it active.

    Args:
        path: File path
    """
    node = _lookup(path)
    if node is None or node.is_folder:
        return f"Error: no file {path}"
    workspace.tree.open_file(node.id)
    tabs = [workspace.tree.get(fid).name for fid in workspace.tree.open_files]
    return f"Active: {node.name}\nOpen: {', '.join(tabs)}"


@mcp_server.tool()
async def close_file(path: str) -> str:
    """
    Close a file tab. The most recently opened remaining tab becomes active.

    Args:
        path: File path
    """
    node = _lookup(path)
    if node is None or node.id not in workspace.tree.open_files:
        return f"Error: {path} is not open"
    workspace.tree.close_file(node.id)
    active = workspace.tree.active_file()
    return f"Closed {node.name}. Active: {active.name if active else 'none'}"


@mcp_server.tool()
async def read_file(path: str) -> str:
    """
    Read a file from the local tree (as last pushed or pulled).

    Args:
        path: File path

    Returns:
        File contents.
    """
    node = _lookup(path)
    if node is None or node.is_folder:
        return f"Error: no file {path}"
    return _truncate(node.content or "")


@mcp_server.tool()
async def edit_file(path: str, content: str) -> str:
    """
    Replace a file's whole content and push it to the sandbox.

    Args:
        path: File path
        content: New content

    Returns:
        Confirmation with size and sync result.
    """
    node = _lookup(path)
    if node is None or node.is_folder:
        return f"Error: no file {path}"
    ok = await workspace.edit_file(node.id, content)
    return f"Wrote {len(content.encode())} bytes to {workspace.tree.resolve_path(node.id)}{_sync_note(ok)}"


@mcp_server.tool()
async def delete(path: str) -> str:
    """
    Delete a file or a folder with everything inside it, locally and in the sandbox.

    Args:
        path: File or folder path
    """
    node = _lookup(path)
    if node is None or node.id == workspace.tree.root_id:
        return f"Error: no file or folder {path}"
    full = workspace.tree.resolve_path(node.id)
    removed = await workspace.delete_node(node.id)
    ok = workspace.reconciler.status != "error"
    return f"Deleted {full} ({len(removed)} items){_sync_note(ok and workspace.connection.connected)}"


# ── Sync tools ───────────────────────────────────────────────────────────


@mcp_server.tool()
async def push() -> str:
    """
    Write every local file and folder to the sandbox (folders first).
    Best effort: every item is attempted even if some fail.
    """
    if await workspace.push():
        return f"Pushed {len(workspace.tree) - 1} items to {workspace.base_path}"
    return f"Error: {workspace.reconciler.last_error}"


@mcp_server.tool()
async def pull() -> str:
    """
    Replace the local tree with the sandbox's files. Closes all open files.
    Use sync_now to merge instead.
    """
    if await workspace.pull():
        return f"Pulled {len(workspace.tree) - 1} items from {workspace.base_path}"
    return f"Error: {workspace.reconciler.last_error}"


@mcp_server.tool()
async def sync_now() -> str:
    """
    Merge sandbox files into the local tree now. Sandbox content wins on
    matching paths; open files stay open.
    """
    before = len(workspace.tree)
    if await workspace.sync_now():
        return f"Synced ({len(workspace.tree) - before} new items)"
    return f"Error: {workspace.reconciler.last_error}"


@mcp_server.tool()
async def changes(limit: int = 50) -> str:
    """
    Show sandbox-side changes seen by the poller (newest last).

    Args:
        limit: Number of events to show (default 50, 0 for all)
    """
    events = workspace.changes(limit)
    if not events:
        return "No changes detected"
    lines = []
    for ts, event in events:
        stamp = time.strftime("%H:%M:%S", time.localtime(ts))
        suffix = "/" if event.is_directory else ""
        lines.append(f"{stamp} {event.kind.value:8s} {event.path}{suffix}")
    return "\n".join(lines)


# ── Terminal tools ───────────────────────────────────────────────────────


@mcp_server.tool()
async def terminal_open() -> str:
    """
    Open a new interactive terminal in the sandbox and make it active.
    """
    session_id = await workspace.sessions.create_session()
    if session_id is None:
        if not workspace.connection.connected:
            return "Error: no sandbox connected"
        return "Error: could not open terminal"
    session = workspace.sessions.get(session_id)
    return f"Opened {session.name} [{session_id}]"


@mcp_server.tool()
async def terminal_list() -> str:
    """
    List open terminals. The active one is marked "*".
    """
    sessions = workspace.sessions.sessions()
    if not sessions:
        return "No terminals"
    lines = []
    for s in sessions:
        active = " *" if s.id == workspace.sessions.active_id else ""
        state = f"PID {s.handle.pid}" if s.ready else "initializing"
        lines.append(f"{s.id:8s} {s.name}  {state}{active}")
    return "\n".join(lines)


@mcp_server.tool()
async def terminal_send(input: str, terminal: str = "", newline: bool = True) -> str:
    """
    Send keystrokes to a terminal.

    Args:
        input: Text to type (e.g., "npm install")
        terminal: Terminal id (default: the active terminal)
        newline: Append Enter (default True)
    """
    session_id = _terminal_id(terminal)
    if not session_id or session_id not in workspace.sessions:
        return f"Error: no terminal '{terminal or 'active'}'"
    workspace.sessions.set_active(session_id)
    data = input + ("\n" if newline else "")
    if not await workspace.sessions.send_keys(session_id, data):
        return f"Error: could not send to {session_id}"
    return f"Sent {len(data.encode())} bytes to {session_id}"


@mcp_server.tool()
async def terminal_read(terminal: str = "", wait: float = 0.5, all: bool = False) -> str:
    """
    Read terminal output.

    Args:
        terminal: Terminal id (default: the active terminal)
        wait: Seconds to wait for output first (default 0.5)
        all: Return the whole scrollback instead of only unread output
    """
    session_id = _terminal_id(terminal)
    session = workspace.sessions.get(session_id) if session_id else None
    if session is None:
        return f"Error: no terminal '{terminal or 'active'}'"
    if wait > 0:
        await asyncio.sleep(min(wait, 30.0))
    output = session.surface.read(new_only=not all)
    return _truncate(output) if output else "(no new output)"


@mcp_server.tool()
async def terminal_resize(cols: int, rows: int, terminal: str = "") -> str:
    """
    Resize a terminal, or every terminal when terminal is "*".

    Args:
        cols: Columns
        rows: Rows
        terminal: Terminal id, "*" for all (default: the active terminal)
    """
    if terminal == "*":
        await workspace.sessions.resize_all(cols, rows)
        return f"Resized {len(workspace.sessions)} terminals to {cols}x{rows}"
    session_id = _terminal_id(terminal)
    if not session_id or not await workspace.sessions.resize(session_id, cols, rows):
        return f"Error: could not resize '{terminal or 'active'}'"
    return f"Resized {session_id} to {cols}x{rows}"


@mcp_server.tool()
async def terminal_close(terminal: str = "") -> str:
    """
    Close a terminal and kill its shell.

    Args:
        terminal: Terminal id (default: the active terminal)
    """
    session_id = _terminal_id(terminal)
    if not session_id or not await workspace.sessions.close_session(session_id):
        return f"Error: no terminal '{terminal or 'active'}'"
    active = workspace.sessions.active_id or "none"
    return f"Closed {session_id}. Active: {active}"


@mcp_server.tool()
async def auto_sync(enabled: bool) -> str:
    """
    Turn prompt-triggered pulls on or off.

    Args:
        enabled: True to pull after shell commands finish, False to only sync on demand
    """
    workspace.sessions.set_auto_sync(enabled)
    return f"Auto-sync {'on' if enabled else 'off'}"


# ── Command tools ────────────────────────────────────────────────────────


@mcp_server.tool()
async def run(command: str, background: bool = False) -> str:
    """
    Run a one-shot command in the sandbox (outside any terminal).

    Args:
        command: Shell command
        background: Start it in the background and return immediately

    Returns:
        Command output with stdout, stderr, exit code, and execution time.
    """
    try:
        result = await workspace.connection.client.run_command(command, background)
    except (RemoteUnavailable, RemoteError) as e:
        return f"Error: {e}"
    return _format_result(result)


@mcp_server.tool()
async def preview_url(port: int) -> str:
    """
    Public URL for a port served inside the sandbox (e.g., a dev server).

    Args:
        port: Port number inside the sandbox
    """
    try:
        return workspace.connection.client.preview_url(port)
    except (RemoteUnavailable, RemoteError) as e:
        return f"Error: {e}"


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
