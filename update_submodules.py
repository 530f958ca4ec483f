#!/usr/bin/env python3
"""
Keep the course submodules in sync with their upstreams.

- Refuse to run unless the superproject working tree is clean
  (with tailored guidance when only submodule pointers are dirty)
- For each submodule path (in order):
  - classlib:    update to the newest commit of its remote branch
  - qmcsoftware: fetch/checkout 'develop' and fast-forward only
- Show the resulting pointer changes
- --commit: stage and commit the pointers
- --push:   commit, then push the current branch

Requires: GitPython
"""

import os
import sys
import argparse
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from git import Repo, GitCommandError, InvalidGitRepositoryError, NoSuchPathError


# ========================
# Constants and types
# ========================

COMMIT_MESSAGE = 'Update submodules (classlib + qmcsoftware)'
GITMODULES = '.gitmodules'


class Mode(Enum):
    PLAIN = ''
    COMMIT = '--commit'
    PUSH = '--push'

    @property
    def commits(self) -> bool:
        return self is not Mode.PLAIN

    @property
    def pushes(self) -> bool:
        return self is Mode.PUSH

    @property
    def flag_suffix(self) -> str:
        return f" {self.value}" if self.value else ''


class UpdatePolicy(Enum):
    TRACK_REMOTE = 'track-remote'
    FIXED_BRANCH = 'fixed-branch'


@dataclass(frozen=True)
class SubmoduleSpec:
    path: str
    policy: UpdatePolicy
    branch: str = ''


# These are **paths** in the superproject, not repository names.
SUBMODULES = (
    SubmoduleSpec('classlib', UpdatePolicy.TRACK_REMOTE),
    SubmoduleSpec('qmcsoftware', UpdatePolicy.FIXED_BRANCH, 'develop'),
)
SUBMODULE_PATHS = tuple(s.path for s in SUBMODULES)


@dataclass(frozen=True)
class StatusEntry:
    code: str
    path: str


def parse_status(text: str) -> List[StatusEntry]:
    """Parse `git status --porcelain` output into (code, path) records.

    Renames report their destination path.
    """
    entries: List[StatusEntry] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        code, path = line[:2], line[3:]
        if ' -> ' in path:
            path = path.split(' -> ', 1)[1]
        entries.append(StatusEntry(code, path.strip().strip('"')))
    return entries


# ========================
# Errors
# ========================

class SyncError(Exception):
    exit_code = 1


class UsageError(SyncError):
    pass


class PreconditionError(SyncError):
    pass


class BlockedWorktree(SyncError):
    pass


class ExternalToolError(SyncError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @classmethod
    def from_git(cls, e: GitCommandError) -> 'ExternalToolError':
        command = ' '.join(str(c) for c in e.command) if isinstance(e.command, (list, tuple)) else str(e.command)
        # GitPython renders stderr as "\n  stderr: '<text>'"
        stderr = (e.stderr or '').strip()
        if stderr.startswith("stderr: '") and stderr.endswith("'"):
            stderr = stderr[len("stderr: '"):-1].strip()
        message = f"'{command}' failed with status {e.status}"
        if stderr:
            message = f"{message}: {stderr}"
        status = e.status if isinstance(e.status, int) else None
        return cls(message, status)


# ========================
# Configuration and logging
# ========================

def timestamp() -> str:
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')


def log(message: str):
    print(f"[{timestamp()}] {message}")


def log_error(cfg: Dict[str, object], message: str):
    if cfg.get('log_groups'):
        print(f"::error::{message}", file=sys.stderr)
    else:
        print(f"Error: {message}", file=sys.stderr)


def start_log_group(cfg: Dict[str, object], title: str):
    if cfg.get('log_groups'):
        print(f"::group::{title}")


def end_log_group(cfg: Dict[str, object]):
    if cfg.get('log_groups'):
        print("::endgroup::")


def rerun_command(argv0: str, mode: Mode, repo_root: str) -> str:
    script_name = os.path.basename(argv0) or 'update_submodules.py'
    script_dir = os.path.dirname(os.path.abspath(argv0)) if argv0 else ''
    prefix = './' if script_dir and os.path.normcase(script_dir) == os.path.normcase(os.path.abspath(repo_root)) else ''
    return f"{prefix}{script_name}{mode.flag_suffix}"


def build_config(mode: Mode, argv0: str, repo_root: str) -> Dict[str, object]:
    return {
        'mode': mode,
        'script_name': os.path.basename(argv0),
        'rerun': rerun_command(argv0, mode, repo_root),
        'log_groups': os.environ.get('GITHUB_ACTIONS', '').strip().lower() == 'true',
        'repo_root': repo_root,
    }


# ========================
# Git client
# ========================

@contextmanager
def git_errors():
    try:
        yield
    except GitCommandError as e:
        raise ExternalToolError.from_git(e) from e


class GitClient:
    """Thin wrapper over GitPython for the handful of commands we run.

    Every GitCommandError surfaces as ExternalToolError.
    """

    def __init__(self, root: str = '.'):
        self.root = root
        try:
            self.repo = Repo(root)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise PreconditionError(f"not a git repository: {root}") from e

    def _subrepo(self, path: str) -> Repo:
        try:
            return Repo(os.path.join(self.root, path))
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise ExternalToolError(f"submodule '{path}' is not checked out") from e

    def status_text(self) -> str:
        with git_errors():
            return self.repo.git.status('--porcelain')

    def status(self) -> List[StatusEntry]:
        return parse_status(self.status_text())

    def short_status(self) -> str:
        with git_errors():
            return self.repo.git.status('--short')

    def is_declared(self, path: str) -> bool:
        try:
            with open(os.path.join(self.root, GITMODULES), encoding='utf-8') as f:
                return any(line.strip() == f"path = {path}" for line in f)
        except FileNotFoundError:
            return False

    def update_submodule(self, path: str, remote: bool = False):
        args = ['update', '--init']
        if remote:
            args.append('--remote')
        with git_errors():
            self.repo.git.submodule(*args, '--', path)

    def fetch(self, path: str, branch: str):
        with git_errors():
            self._subrepo(path).git.fetch('origin', branch)

    def checkout(self, path: str, branch: str):
        with git_errors():
            self._subrepo(path).git.checkout(branch)

    def pull_ff_only(self, path: str, branch: str):
        with git_errors():
            self._subrepo(path).git.pull('--ff-only', 'origin', branch)

    def add(self, paths: Iterable[str]):
        with git_errors():
            self.repo.git.add('--', *paths)

    def commit(self, message: str):
        with git_errors():
            self.repo.git.commit('-m', message)

    def push(self):
        with git_errors():
            self.repo.git.push()


# ========================
# Core operations
# ========================

class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog=prog,
        usage='%(prog)s [--commit | --push]',
        description='Update the classlib and qmcsoftware submodules; optionally commit and push the new pointers.',
        allow_abbrev=False,
        add_help=False,
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--commit', action='store_true', help='Commit updated submodule pointers')
    group.add_argument('--push', action='store_true', help='Commit updated submodule pointers, then push')
    return parser


def parse_args(argv: Sequence[str], prog: Optional[str] = None) -> Mode:
    args = build_parser(prog).parse_args(list(argv))
    if args.push:
        return Mode.PUSH
    if args.commit:
        return Mode.COMMIT
    return Mode.PLAIN


def ensure_repo_root(cwd: str):
    if not os.path.isdir(os.path.join(cwd, '.git')):
        raise PreconditionError('run this script from the root of the repository.')


def ensure_clean_worktree(client, cfg: Dict[str, object]):
    ws = client.status_text()
    entries = parse_status(ws)
    if not entries:
        return

    rerun = cfg['rerun']
    if all(e.path in SUBMODULE_PATHS for e in entries):
        log('Uncommitted changes present — submodule pointers (classlib/qmcsoftware) are modified.')
        print()
        print('git status --short:')
        print(ws)
        print()
        print('This usually means:')
        print('  • You pulled new changes and updated submodule pointers.')
        print('  • A previous run of this script stopped before committing.')
        print()
        print('To record these pointer updates, run:')
        print(f"  git add {' '.join(SUBMODULE_PATHS)}")
        print('  git commit -m "Update submodule pointers"')
        print()
        print('To discard them, run:')
        print(f"  git restore --staged {' '.join(SUBMODULE_PATHS)} 2>/dev/null || true")
        print('  git submodule update --init --recursive')
        print()
        print('Then re-run:')
        print(f"  {rerun}")
        raise BlockedWorktree('submodule pointers have uncommitted changes.')

    log('Uncommitted changes present — working tree is not clean.')
    print()
    print('git status --short:')
    print(ws)
    print()
    print('Please commit, stash, or discard these changes before running:')
    print(f"  {rerun}")
    raise BlockedWorktree('working tree is not clean.')


def update_submodule(client, spec: SubmoduleSpec, cfg: Optional[Dict[str, object]] = None):
    cfg = cfg or {}
    if not client.is_declared(spec.path):
        log(f"Skipping: no submodule with path '{spec.path}' in this repo.")
        return

    start_log_group(cfg, f"Updating submodule '{spec.path}'")
    try:
        log(f"Updating submodule at path: {spec.path} ...")
        if spec.policy is UpdatePolicy.FIXED_BRANCH:
            client.update_submodule(spec.path)
            client.fetch(spec.path, spec.branch)
            client.checkout(spec.path, spec.branch)
            client.pull_ff_only(spec.path, spec.branch)
        else:
            client.update_submodule(spec.path, remote=True)
    finally:
        end_log_group(cfg)


def report_and_finish(client, cfg: Dict[str, object]) -> int:
    if not client.status():
        log('All submodules already up to date.')
        return 0

    print(client.short_status())

    mode = cfg['mode']
    if mode.commits:
        log('Committing updated submodule pointers...')
        client.add(SUBMODULE_PATHS)
        client.commit(COMMIT_MESSAGE)
        if mode.pushes:
            log('Pushing commit...')
            client.push()
        else:
            log('Commit created; remember to push if needed.')
    else:
        log('Review changes above; commit manually if desired.')

    log('Done.')
    return 0


# ========================
# Orchestration
# ========================

def run(argv: Sequence[str], argv0: str, cwd: str,
        client_factory: Callable[[str], object] = GitClient) -> int:
    prog = os.path.basename(argv0) or None
    cfg: Dict[str, object] = {}
    try:
        mode = parse_args(argv, prog)
        cfg = build_config(mode, argv0, cwd)
        ensure_repo_root(cwd)
        client = client_factory(cwd)
        ensure_clean_worktree(client, cfg)
        for spec in SUBMODULES:
            update_submodule(client, spec, cfg)
        return report_and_finish(client, cfg)
    except UsageError as e:
        print(f"Usage: {build_parser(prog).prog} [--commit | --push]", file=sys.stderr)
        log_error(cfg, str(e))
        return e.exit_code
    except BlockedWorktree as e:
        return e.exit_code
    except SyncError as e:
        log_error(cfg, str(e))
        return e.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    return run(argv, sys.argv[0], os.getcwd())


if __name__ == '__main__':
    sys.exit(main())
