import shutil
from pathlib import Path

import pytest
from git import Repo

import update_submodules

from tests.helpers import FIXED_TS, commit_file


@pytest.fixture(autouse=True)
def pinned_clock(monkeypatch):
    monkeypatch.setattr(update_submodules, 'timestamp', lambda: FIXED_TS)
    monkeypatch.delenv('GITHUB_ACTIONS', raising=False)


@pytest.fixture
def repo_root(tmp_path):
    """An empty directory that passes the repository-root check."""
    (tmp_path / '.git').mkdir()
    return tmp_path


# ========================
# Real repositories
# ========================

@pytest.fixture
def git_env(tmp_path, monkeypatch):
    if shutil.which('git') is None:
        pytest.skip('git executable not available')
    home = tmp_path / 'home'
    home.mkdir()
    monkeypatch.setenv('HOME', str(home))
    monkeypatch.setenv('GIT_CONFIG_NOSYSTEM', '1')
    for role in ('AUTHOR', 'COMMITTER'):
        monkeypatch.setenv(f'GIT_{role}_NAME', 'Test User')
        monkeypatch.setenv(f'GIT_{role}_EMAIL', 'test@example.com')
    # Local-path submodules need the file transport.
    monkeypatch.setenv('GIT_CONFIG_COUNT', '1')
    monkeypatch.setenv('GIT_CONFIG_KEY_0', 'protocol.file.allow')
    monkeypatch.setenv('GIT_CONFIG_VALUE_0', 'always')
    return tmp_path


class Workspace:
    def __init__(self, base: Path):
        self.classlib = Repo.init(base / 'up_classlib', initial_branch='master')
        commit_file(self.classlib, 'lib.py', 'v1\n', 'classlib v1')

        self.qmc = Repo.init(base / 'up_qmcsoftware', initial_branch='develop')
        commit_file(self.qmc, 'qmc.py', 'v1\n', 'qmcsoftware v1')

        self.origin = Repo.init(base / 'super.git', bare=True, initial_branch='main')

        self.work = Repo.init(base / 'work', initial_branch='main')
        commit_file(self.work, 'README.md', 'course\n', 'initial')
        self.work.git.submodule('add', '--', self.classlib.working_tree_dir, 'classlib')
        self.work.git.submodule('add', '--', self.qmc.working_tree_dir, 'qmcsoftware')
        self.work.git.commit('-m', 'Add submodules')
        self.work.create_remote('origin', self.origin.git_dir)
        self.work.git.push('-u', 'origin', 'main')

    @property
    def root(self) -> str:
        return self.work.working_tree_dir

    def sub_head(self, path: str) -> str:
        return Repo(Path(self.root, path)).head.commit.hexsha

    def advance_upstreams(self):
        return (
            commit_file(self.classlib, 'lib.py', 'v2\n', 'classlib v2'),
            commit_file(self.qmc, 'qmc.py', 'v2\n', 'qmcsoftware v2'),
        )


@pytest.fixture
def workspace(git_env):
    return Workspace(git_env)
