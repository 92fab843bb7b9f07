"""Pytest configuration and fixtures."""

from pathlib import Path

import pytest

import mfd


HASH_A = "a" * 40
HASH_B = "b" * 40
HASH_C = "c" * 40
HASH_D = "d" * 40
HASH_E = "e" * 40


class FakeGit:
	"""Records git calls and materializes deployment directories."""

	def __init__(self, revisions=None, fail_fetch=False):
		self.revisions = revisions or {}
		self.fail_fetch = fail_fetch
		self.resolved = []
		self.fetched = []

	def resolve_revision(self, url, revision, auth=None):
		self.resolved.append((url, revision, auth))
		if revision not in self.revisions:
			raise mfd.VCSError(f"Error resolving revision {revision}")
		return self.revisions[revision]

	def fetch_and_checkout(self, url, commit_hash, auth, destination):
		self.fetched.append((url, commit_hash, auth, Path(destination)))
		if self.fail_fetch:
			raise mfd.VCSError(f"Error cloning repository for commit {commit_hash}")
		(Path(destination) / ".git").mkdir(parents=True, exist_ok=True)


class FakeRunner:
	"""Records commands; exit codes can be set per command."""

	def __init__(self, codes=None):
		self.codes = codes or {}
		self.calls = []

	def run(self, argv, cwd):
		self.calls.append((list(argv), Path(cwd)))
		return self.codes.get(tuple(argv), 0)


class FakeSystemd:
	"""Records restarts and returns a fixed result."""

	def __init__(self, ok=True):
		self.ok = ok
		self.restarted = []

	def restart(self, unit):
		self.restarted.append(unit)
		return self.ok


@pytest.fixture(autouse=True)
def reset_output_state(monkeypatch):
	"""Keep console flags independent between tests."""
	monkeypatch.setattr(mfd, "_verbose", False)
	monkeypatch.setattr(mfd, "_quiet", False)
	monkeypatch.setattr(mfd, "_no_color", True)
	monkeypatch.setattr(mfd, "_log_first_op", True)


@pytest.fixture
def root(tmp_path):
	"""Empty working root."""
	return mfd.LocalRoot(tmp_path)


@pytest.fixture
def make_deployment(root):
	"""Create a deployment directory and return its Deployment."""

	def _make(created_at, commit_hash, built=True):
		deployment = mfd.Deployment(created_at=created_at, commit_hash=commit_hash)
		root.join(deployment.name).mkdir()
		if built:
			(root.join(deployment.name) / mfd.BUILD_MARKER).touch()
		return deployment

	return _make


@pytest.fixture
def config():
	return mfd.Config(
		repo=mfd.RepoConfig(url="https://example.com/app.git"),
		build=mfd.BuildConfig(commands=[["make", "deps"], ["make", "build"]]),
		systemd=mfd.SystemdConfig(unit="app.service"),
	)


@pytest.fixture
def ctx(root, config):
	"""Lifecycle context wired to fake collaborators."""
	return mfd.Context(
		root=root,
		config=config,
		vcs=FakeGit(),
		runner=FakeRunner(),
		services=FakeSystemd(),
		keep=3,
	)
