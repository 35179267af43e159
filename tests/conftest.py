from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from spec_tui.worktrees import NO_REMOTE, SyncStatus, Worktree, WorktreeStatus

AGENT_SCRIPT = textwrap.dedent(
    '''
    import json
    import sys

    FRAMING = sys.argv[1] if len(sys.argv) > 1 else "newline"
    MODE = sys.argv[2] if len(sys.argv) > 2 else ""


    def read():
        if FRAMING == "newline":
            line = sys.stdin.buffer.readline()
            return json.loads(line) if line else None
        length = None
        while True:
            header = sys.stdin.buffer.readline()
            if not header:
                return None
            header = header.strip()
            if not header:
                break
            name, _, value = header.decode("ascii").partition(":")
            if name.strip().lower() == "content-length":
                length = int(value)
        return json.loads(sys.stdin.buffer.read(length))


    def write(message):
        data = json.dumps(message).encode("utf-8")
        if FRAMING == "newline":
            sys.stdout.buffer.write(data + b"\\n")
        else:
            sys.stdout.buffer.write(b"Content-Length: %d\\r\\n\\r\\n" % len(data) + data)
        sys.stdout.buffer.flush()


    while True:
        message = read()
        if message is None:
            break
        method = message.get("method")
        request_id = message.get("id")
        if method == "initialize":
            write({
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {
                    "protocolVersion": message["params"]["protocolVersion"],
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": "script-agent", "version": "1.0"},
                },
            })
            if MODE == "bad-frames":
                if FRAMING == "newline":
                    sys.stdout.buffer.write(b"x" * 4096 + b"\\n")
                else:
                    sys.stdout.buffer.write(b"Content-Length: -5\\r\\n\\r\\nX-Trace: 1\\r\\n\\r\\n")
                sys.stdout.buffer.flush()
        elif method == "tools/list":
            write({"jsonrpc": "2.0", "id": request_id, "result": {"tools": [{"name": "speckit.plan"}]}})
        elif method == "tools/call":
            if MODE == "exit-on-call":
                sys.exit(4)
            token = message["params"]["_meta"]["progressToken"]
            sys.stderr.write("working\\n")
            sys.stderr.flush()
            write({
                "jsonrpc": "2.0",
                "method": "notifications/progress",
                "params": {"progressToken": token, "progress": 1, "total": 2, "message": "halfway"},
            })
            spec_id = message["params"]["arguments"].get("spec_id", "?")
            write({
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"content": [{"type": "text", "text": "planned " + spec_id}]},
            })
        elif method == "shutdown":
            write({"jsonrpc": "2.0", "id": request_id, "result": None})
        elif method == "exit":
            break
    '''
)


@pytest.fixture
def agent_script(tmp_path: Path) -> Path:
    """A small stdio agent speaking the workflow protocol."""

    script = tmp_path / "agent.py"
    script.write_text(AGENT_SCRIPT, encoding="utf-8")
    return script


@pytest.fixture
def make_spec():
    """Create ``specs_dir/spec_id`` holding the named artifact files."""

    def factory(specs_dir: Path, spec_id: str, *artifacts: str) -> Path:
        directory = specs_dir / spec_id
        directory.mkdir(parents=True)
        for name in artifacts:
            (directory / name).write_text(f"# {name}\n", encoding="utf-8")
        return directory

    return factory


class StubBackend:
    """In-memory version-control backend; every added worktree starts clean."""

    def __init__(self, root: Path, branches: tuple[str, ...] = ()) -> None:
        self.root = root
        self.branches = set(branches)
        self.worktrees = [Worktree(path=root, branch="main", is_main=True)]
        self.dirty: set[str] = set()
        self.added: list[str] = []
        self.created_branches: list[tuple[str, str | None]] = []
        self.removed: list[tuple[Path, bool]] = []
        self.sync: dict[str, SyncStatus] = {}

    def list_worktrees(self) -> list[Worktree]:
        return [Worktree(path=w.path, branch=w.branch, is_main=w.is_main) for w in self.worktrees]

    def branch_exists(self, branch: str) -> bool:
        return branch in self.branches

    def create_branch(self, branch: str, start_point: str | None = None) -> None:
        self.created_branches.append((branch, start_point))
        self.branches.add(branch)

    def add_worktree(self, branch: str, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)
        self.added.append(branch)
        self.worktrees.append(Worktree(path=path, branch=branch))

    def remove_worktree(self, path: Path, *, force: bool = False) -> None:
        self.removed.append((path, force))
        self.worktrees = [w for w in self.worktrees if w.path != path]

    def status(self, path: Path) -> WorktreeStatus:
        worktree = next((w for w in self.worktrees if w.path == path), None)
        if worktree is None:
            return WorktreeStatus.unknown()
        if worktree.branch in self.dirty:
            return WorktreeStatus.dirty(modified=1)
        return WorktreeStatus.clean()

    def sync_status(self, branch: str) -> SyncStatus:
        return self.sync.get(branch, NO_REMOTE)


@pytest.fixture
def spec_repo(tmp_path: Path, make_spec) -> Path:
    """A repository root with three specifications in different phases."""

    root = tmp_path / "repo"
    specs = root / "specs"
    make_spec(specs, "001-feature-auth", "spec.md", "plan.md", "tasks.md")
    make_spec(specs, "002-export", "spec.md")
    make_spec(specs, "003-import")
    return root


@pytest.fixture
def stub_backend(spec_repo: Path) -> StubBackend:
    return StubBackend(spec_repo, branches=("001-feature-auth", "002-export", "003-import"))
