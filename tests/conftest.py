import os
import sys
import tempfile
import textwrap
from pathlib import Path

import git
import pytest

from command_orchestrator.config import Settings, UserConfig
from command_orchestrator.models.command import CommandConfig, RepoRef
from command_orchestrator.services.authorization import Actor, Role

# Set up minimal test environment BEFORE any application code reads settings
_tmp_dir = tempfile.TemporaryDirectory(prefix="pytest_config_")
_config_file = Path(_tmp_dir.name) / "config.yaml"
_config_file.write_text(
    f"""
storage:
  data_path: {_tmp_dir.name}/data
  workspace_path: {_tmp_dir.name}/workspace

auth:
  users:
    - name: alice
      token: user-token-123
      role: user
"""
)
os.environ["CONFIG_PATH"] = str(_config_file)

USER_TOKEN = "user-token-123"
ADMIN_TOKEN = "admin-token-456"
VIEWER_TOKEN = "viewer-token-789"

FAKE_TOOL = textwrap.dedent(
    '''
    """Stand-in for the code-modification tool, driven by FAKE_TOOL_MODE."""
    import json
    import os
    import sys
    import time
    from pathlib import Path

    mode = os.environ.get("FAKE_TOOL_MODE", "modify")
    args = sys.argv[1:]
    tree = next(Path(a) for a in args if Path(a).is_dir())
    targets = args[args.index(str(tree)) + 1 :]

    print("\\x1b[32mbatchai\\x1b[0m " + " ".join(args), flush=True)
    print("scanning " + (", ".join(targets) or "."), file=sys.stderr, flush=True)

    if mode == "sleep":
        time.sleep(30)
    elif mode == "fail":
        print("boom", flush=True)
        sys.exit(3)
    elif mode == "modify":
        with open(tree / "src" / "app.py", "a") as f:
            f.write("# fixed by tool\\n")
        report = {"path": "src/app.py", "has_issue": True, "overall_severity": "minor"}
        report_dir = Path(os.environ["BATCHAI_REPORT_DIR"])
        (report_dir / "app.check.json").write_text(json.dumps(report))
    print("done", flush=True)
    '''
)


@pytest.fixture
def user() -> Actor:
    return Actor(name="alice", role=Role.USER)


@pytest.fixture
def admin() -> Actor:
    return Actor(name="root", role=Role.ADMIN)


@pytest.fixture
def viewer() -> Actor:
    return Actor(name="guest", role=Role.NONE)


def _configure(repo: git.Repo) -> None:
    with repo.config_writer() as config:
        config.set_value("user", "name", "Test Author")
        config.set_value("user", "email", "test@example.com")


@pytest.fixture
def origin_repo(tmp_path: Path) -> Path:
    """
    Bare repository seeded with one commit on ``main``.

    Layout: ``README.md``, ``src/app.py``, ``src/util.py``.
    """
    bare = tmp_path / "origin" / "demo.git"
    git.Repo.init(bare, bare=True, initial_branch="main")

    seed_path = tmp_path / "seed"
    seed = git.Repo.init(seed_path, initial_branch="main")
    _configure(seed)
    (seed_path / "src").mkdir()
    (seed_path / "README.md").write_text("# demo\n")
    (seed_path / "src" / "app.py").write_text("print('hello')\n")
    (seed_path / "src" / "util.py").write_text("X = 1\n")
    seed.index.add(["README.md", "src/app.py", "src/util.py"])
    seed.index.commit("initial commit")
    seed.create_remote("origin", str(bare))
    seed.remotes.origin.push(refspec="main:main")
    return bare


@pytest.fixture
def repo_ref(origin_repo: Path) -> RepoRef:
    return RepoRef(owner="octo", name="demo", url=str(origin_repo))


@pytest.fixture
def command_config(repo_ref: RepoRef) -> CommandConfig:
    return CommandConfig(repo=repo_ref, target_paths=["src/app.py"])


@pytest.fixture
def fake_tool(tmp_path: Path) -> list[str]:
    """Executable argv for the stand-in tool."""
    script = tmp_path / "fake_tool.py"
    script.write_text(FAKE_TOOL)
    return [sys.executable, str(script)]


@pytest.fixture
def settings(tmp_path: Path, fake_tool: list[str]) -> Settings:
    """Settings rooted in a temporary directory (hosting disabled)."""
    return Settings(
        data_path=str(tmp_path / "data"),
        workspace_path=str(tmp_path / "workspace"),
        git_timeout_seconds=60,
        tool_executable=fake_tool,
        tool_timeout_seconds=20,
        max_concurrent_commands=2,
        auth_users=[
            UserConfig(name="alice", token=USER_TOKEN, role="user"),
            UserConfig(name="root", token=ADMIN_TOKEN, role="admin"),
            UserConfig(name="guest", token=VIEWER_TOKEN, role="none"),
        ],
        log_json=False,
    )
