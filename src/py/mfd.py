#!/usr/bin/env python3
# --
# File: mfd.py
#
# `mfd` deploys applications that need an install and build step. It turns a
# git revision into a built deployment directory, switches the `active`
# symlink to it, restarts the service and prunes old deployments.
#
# ## Usage
#
# >   mfd [OPTIONS] COMMAND [ARGS...]
#
# ## Working Root Layout
#
# >   mfd.toml                  - Configuration (repo, build, systemd)
# >   mfd_<unixtime>_<commit>/  - One directory per deployment
# >   active -> mfd_...         - Symlink to the live deployment

import argparse
import base64
import dataclasses
import json
import os
import re
import shlex
import shutil
import stat
import subprocess
import sys
import tempfile
import time
import tomllib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, NoReturn, Optional

# -----------------------------------------------------------------------------
#
# GLOBALS AND CONFIGURATION
#
# -----------------------------------------------------------------------------

MFD_VERSION = "1.0.0"
MFD_ROOT = os.environ.get("MFD_ROOT", ".")
MFD_CONFIG = os.environ.get("MFD_CONFIG", "")
MFD_KEEP_DEPLOYMENTS = int(os.environ.get("MFD_KEEP_DEPLOYMENTS", "3"))
MFD_NO_COLOR = os.environ.get("MFD_NO_COLOR", "") == "1"

DEPLOYMENT_PREFIX = "mfd"
ACTIVE_SYMLINK_NAME = "active"
CONFIG_FILENAME = "mfd.toml"
# Written into a deployment directory once all build commands succeeded
BUILD_MARKER = ".mfd-built"
COMMIT_HASH_LENGTH = 40
# Username sent along with a token for HTTP basic auth
TOKEN_USERNAME = "mfd"

# Global runtime state
_verbose = False
_quiet = False
_no_color = MFD_NO_COLOR
_log_first_op = True  # Whether next operation is the first (shows time)

# -----------------------------------------------------------------------------
#
# TYPES
#
# -----------------------------------------------------------------------------


class MFDError(Exception):
	"""Base class for all errors reported by mfd."""

	pass


class ConfigInvalidError(MFDError):
	"""Raised when the configuration is missing keys or is inconsistent."""

	pass


class IdentityInvalidError(MFDError):
	"""Raised when a name is not a valid deployment identity."""

	def __init__(self, name: str, message: Optional[str] = None):
		super().__init__(message or f"Invalid deployment name: {name!r}")
		self.name = name


class DeploymentNotFoundError(MFDError):
	"""Raised when a deployment (or the active pointer) cannot be found."""

	pass


class NoPreviousDeploymentError(MFDError):
	"""Raised when rolling back from the oldest deployment."""

	pass


class ActiveDeploymentError(MFDError):
	"""Raised when an operation would destroy the active deployment."""

	pass


class VCSError(MFDError):
	"""Raised when resolving, cloning or checking out fails."""

	pass


class BuildError(MFDError):
	"""Raised when a build command exits with a non-zero status."""

	def __init__(self, command: list[str], returncode: int):
		super().__init__(
			f"Build command failed (exit code {returncode}): {shlex.join(command)}"
		)
		self.command = command
		self.returncode = returncode


class RestartError(MFDError):
	"""Raised when the service manager fails to restart the unit."""

	def __init__(self, unit: str):
		super().__init__(f"Failed to restart systemd unit {unit}")
		self.unit = unit


@dataclasses.dataclass(frozen=True)
class Deployment:
	"""One fetched and built copy of the application."""

	created_at: int  # Unix seconds
	commit_hash: str
	# Name found on disk, when it differs from the canonical form.
	dirname: Optional[str] = dataclasses.field(default=None, compare=False, repr=False)

	@property
	def name(self) -> str:
		"""Directory name and symlink target.

		A parsed deployment keeps the name it was read from, so "mfd_0100_..."
		stays "mfd_0100_...". New deployments use the canonical form.
		"""
		if self.dirname is not None:
			return self.dirname
		return mfd_deployment_format(self.created_at, self.commit_hash)

	@property
	def created(self) -> datetime:
		return datetime.fromtimestamp(self.created_at, tz=timezone.utc)

	def __str__(self) -> str:
		return self.name


@dataclasses.dataclass
class RepoConfig:
	"""Repository location and credentials."""

	url: str = ""
	username: str = ""
	password: str = ""
	token: str = ""


@dataclasses.dataclass
class BuildConfig:
	"""Build steps, each an argv list run inside the deployment directory."""

	commands: Optional[list[list[str]]] = None  # None when not configured


@dataclasses.dataclass
class SystemdConfig:
	"""Service restarted after activation."""

	unit: str = ""  # Empty disables restarts


@dataclasses.dataclass
class Config:
	"""Complete mfd configuration."""

	repo: RepoConfig = dataclasses.field(default_factory=RepoConfig)
	build: BuildConfig = dataclasses.field(default_factory=BuildConfig)
	systemd: SystemdConfig = dataclasses.field(default_factory=SystemdConfig)


@dataclasses.dataclass(frozen=True)
class RepoAuth:
	"""HTTP basic credentials for the repository."""

	username: str
	password: str


# -----------------------------------------------------------------------------
#
# UTILITIES
#
# -----------------------------------------------------------------------------


def mfd_util_output(message: str) -> None:
	"""Print message to stdout unless quiet mode."""
	if not _quiet:
		print(message)


def mfd_util_verbose(message: str) -> None:
	"""Print message only in verbose mode."""
	if _verbose:
		print(f"[verbose] {message}", file=sys.stderr)


def mfd_util_error(message: str) -> None:
	"""Print error message to stdout."""
	print(f"{mfd_util_color('error:', 'red')} {message}")


def mfd_util_warn(message: str) -> None:
	"""Print warning message to stderr."""
	print(f"{mfd_util_color('warning:', 'yellow')} {message}", file=sys.stderr)


def mfd_util_color(text: str, color: str) -> str:
	"""Colorize text if colors are enabled."""
	if _no_color or not sys.stdout.isatty():
		return text
	colors = {
		"red": "\033[31m",
		"green": "\033[32m",
		"yellow": "\033[33m",
		"cyan": "\033[36m",
		"bold": "\033[1m",
		"reset": "\033[0m",
	}
	return f"{colors.get(color, '')}{text}{colors['reset']}"


def mfd_util_log_op(message: str, commit: Optional[str] = None) -> None:
	"""Log an operation message with consistent format.

	Format: [TIME] MESSAGE [commit=HASH]
	- TIME: shown only for the first operation of the run
	- HASH: shown for operations on a specific deployment
	"""
	global _log_first_op
	if _quiet:
		return

	parts = []
	if _log_first_op:
		parts.append(f"[{datetime.now().strftime('%H:%M:%S')}]")
		_log_first_op = False
	parts.append(message)
	if commit:
		parts.append(f"commit={commit}")
	print(" ".join(parts))


# -----------------------------------------------------------------------------
#
# CONFIG
#
# -----------------------------------------------------------------------------

# Environment variables that override config file values
_CONFIG_ENV_OVERRIDES = {
	"MFD_REPO_URL": ("repo", "url"),
	"MFD_REPO_USERNAME": ("repo", "username"),
	"MFD_REPO_PASSWORD": ("repo", "password"),
	"MFD_REPO_TOKEN": ("repo", "token"),
	"MFD_SYSTEMD_UNIT": ("systemd", "unit"),
}


def mfd_config_load(path: Path) -> Config:
	"""Load config: conf file + env overrides, then validate."""
	try:
		with open(path, "rb") as f:
			data = tomllib.load(f)
	except FileNotFoundError as e:
		raise ConfigInvalidError(f"Configuration file not found: {path}") from e
	except tomllib.TOMLDecodeError as e:
		raise ConfigInvalidError(f"Invalid configuration file {path}: {e}") from e

	config = mfd_config_from_dict(data)
	config = mfd_config_from_env(config)
	mfd_config_validate(config)
	return config


def mfd_config_from_dict(data: dict[str, Any]) -> Config:
	"""Apply TOML data to a new config object, checking value types."""
	config = Config()

	repo = _config_table(data, "repo")
	for key in ("url", "username", "password", "token"):
		if key in repo:
			setattr(config.repo, key, _config_string(repo[key], f"repo.{key}"))

	build = _config_table(data, "build")
	if "commands" in build:
		config.build.commands = _config_commands(build["commands"])

	systemd = _config_table(data, "systemd")
	if "unit" in systemd:
		config.systemd.unit = _config_string(systemd["unit"], "systemd.unit")

	return config


def mfd_config_from_env(config: Config) -> Config:
	"""Apply environment variable overrides to config."""
	for var, (section, key) in _CONFIG_ENV_OVERRIDES.items():
		value = os.environ.get(var)
		if value:
			setattr(getattr(config, section), key, value)
	return config


def mfd_config_validate(config: Config) -> None:
	"""Check required values and authentication settings."""
	missing = []
	if not config.repo.url:
		missing.append("repo.url")
	if config.build.commands is None:
		missing.append("build.commands")
	if missing:
		raise ConfigInvalidError(f"Missing config values: {', '.join(missing)}")

	if config.repo.password and config.repo.token:
		raise ConfigInvalidError(
			"Cannot specify both password and token for authentication"
		)
	if config.repo.password and not config.repo.username:
		raise ConfigInvalidError(
			"Username must be specified when using password authentication"
		)


def mfd_config_auth(config: Config) -> Optional[RepoAuth]:
	"""Credentials to send to the repository, if any."""
	if config.repo.token:
		return RepoAuth(username=TOKEN_USERNAME, password=config.repo.token)
	if config.repo.password:
		return RepoAuth(username=config.repo.username, password=config.repo.password)
	return None


def _config_table(data: dict[str, Any], key: str) -> dict[str, Any]:
	value = data.get(key, {})
	if not isinstance(value, dict):
		raise ConfigInvalidError(f"'{key}' must be a table")
	return value


def _config_string(value: Any, key: str) -> str:
	if not isinstance(value, str):
		raise ConfigInvalidError(f"'{key}' must be a string")
	return value


def _config_commands(value: Any) -> list[list[str]]:
	if not isinstance(value, list):
		raise ConfigInvalidError("'build.commands' must be a list of commands")
	commands = []
	for i, command in enumerate(value):
		if (
			not isinstance(command, list)
			or not command
			or not all(isinstance(arg, str) for arg in command)
		):
			raise ConfigInvalidError(
				f"'build.commands[{i}]' must be a non-empty list of strings"
			)
		commands.append(list(command))
	return commands


# -----------------------------------------------------------------------------
#
# DEPLOYMENT IDENTITY
#
# -----------------------------------------------------------------------------

_TIMESTAMP_RE = re.compile(r"[+-]?[0-9]+")


def mfd_deployment_format(created_at: int, commit_hash: str) -> str:
	"""Build the canonical name: mfd_<unixtime>_<commit>."""
	return f"{DEPLOYMENT_PREFIX}_{created_at}_{commit_hash}"


def mfd_deployment_parse(name: str) -> Deployment:
	"""Parse a canonical name into a Deployment.

	Raises IdentityInvalidError unless NAME has exactly three '_' separated
	parts: the 'mfd' prefix, an integer timestamp and a 40 character hash.
	"""
	parts = name.split("_")
	if len(parts) != 3:
		raise IdentityInvalidError(name)

	prefix, timestamp, commit_hash = parts
	if prefix != DEPLOYMENT_PREFIX:
		raise IdentityInvalidError(name)
	if not _TIMESTAMP_RE.fullmatch(timestamp):
		raise IdentityInvalidError(name)
	# Only the length is checked, the characters may be anything.
	if len(commit_hash) != COMMIT_HASH_LENGTH:
		raise IdentityInvalidError(name)

	deployment = Deployment(created_at=int(timestamp), commit_hash=commit_hash)
	if deployment.name != name:
		deployment = dataclasses.replace(deployment, dirname=name)
	return deployment


def mfd_deployment_new(commit_hash: str, now: Optional[float] = None) -> Deployment:
	"""Create the identity for a new deployment of COMMIT_HASH."""
	created_at = int(time.time() if now is None else now)
	return Deployment(created_at=created_at, commit_hash=commit_hash)


# -----------------------------------------------------------------------------
#
# WORKING ROOT
#
# -----------------------------------------------------------------------------


class LocalRoot:
	"""Directory holding the deployments and the active symlink.

	Every filesystem access of the lifecycle goes through this object, with
	names relative to the root, so nothing depends on the process working
	directory.
	"""

	def __init__(self, path: Path):
		self.path = Path(path)

	def __repr__(self) -> str:
		return f"LocalRoot({str(self.path)!r})"

	def join(self, name: str) -> Path:
		return self.path / name

	def entries(self) -> list[tuple[str, bool]]:
		"""List (name, is_directory) pairs; symlinks are not directories."""
		with os.scandir(self.path) as it:
			return [(entry.name, entry.is_dir(follow_symlinks=False)) for entry in it]

	def readlink(self, name: str) -> Optional[str]:
		"""Return the target of symlink NAME, or None if NAME does not exist."""
		try:
			return os.readlink(self.join(name))
		except FileNotFoundError:
			return None

	def symlink(self, name: str, target: str) -> None:
		"""Point symlink NAME at TARGET, replacing whatever is there atomically."""
		link = self.join(name)
		tmp = self.join(f".{name}.tmp")
		if tmp.is_symlink() or tmp.exists():
			tmp.unlink()
		os.symlink(target, tmp)
		os.replace(tmp, link)

	def remove_tree(self, name: str) -> None:
		"""Remove directory NAME recursively."""
		path = self.join(name)
		# Make directories writable first (handles read-only build outputs)
		for dirpath, _, _ in os.walk(path):
			mode = os.stat(dirpath).st_mode
			if not mode & stat.S_IWUSR:
				os.chmod(dirpath, mode | stat.S_IWUSR)
		shutil.rmtree(path)


# -----------------------------------------------------------------------------
#
# DEPLOYMENT STORE
#
# -----------------------------------------------------------------------------


def mfd_store_list(root: LocalRoot) -> list[Deployment]:
	"""List deployments in ROOT, newest first.

	Entries that are not directories or whose names do not parse are skipped.
	Deployments with equal timestamps keep the directory scan order.
	"""
	deployments = []
	for name, is_dir in root.entries():
		if not is_dir:
			continue
		try:
			deployments.append(mfd_deployment_parse(name))
		except IdentityInvalidError:
			continue
	return sorted(deployments, key=lambda d: d.created_at, reverse=True)


def mfd_store_find_by_commit(
	deployments: list[Deployment], commit_hash: str
) -> Deployment:
	"""Return the first deployment of COMMIT_HASH in list order."""
	for deployment in deployments:
		if deployment.commit_hash == commit_hash:
			return deployment
	raise DeploymentNotFoundError(f"No deployment found for commit {commit_hash}")


def mfd_store_active(root: LocalRoot) -> Deployment:
	"""Return the deployment the active symlink points at."""
	target = root.readlink(ACTIVE_SYMLINK_NAME)
	if target is None:
		raise DeploymentNotFoundError("No active deployment")
	try:
		return mfd_deployment_parse(target)
	except IdentityInvalidError as e:
		raise IdentityInvalidError(
			target, f"Active symlink points to an invalid deployment: {target!r}"
		) from e


def mfd_store_lookup(deployments: list[Deployment], ref: str) -> Deployment:
	"""Find a listed deployment by canonical name or commit hash."""
	try:
		wanted = mfd_deployment_parse(ref)
	except IdentityInvalidError:
		return mfd_store_find_by_commit(deployments, ref)
	if wanted not in deployments:
		raise DeploymentNotFoundError(f"Deployment not found: {ref}")
	return deployments[deployments.index(wanted)]


def mfd_store_is_built(root: LocalRoot, deployment: Deployment) -> bool:
	"""Whether every build command of DEPLOYMENT completed."""
	return (root.join(deployment.name) / BUILD_MARKER).is_file()


def _mfd_store_active_or_none(root: LocalRoot) -> Optional[Deployment]:
	try:
		return mfd_store_active(root)
	except DeploymentNotFoundError:
		return None


# -----------------------------------------------------------------------------
#
# ACTIVATION
#
# -----------------------------------------------------------------------------


def mfd_activate(root: LocalRoot, deployment: Deployment) -> None:
	"""Point the active symlink at DEPLOYMENT.

	The new link is created under a temporary name and renamed over the old
	one, so readers always see either the old or the new target.
	"""
	mfd_util_log_op("Activating deployment", commit=deployment.commit_hash)
	root.symlink(ACTIVE_SYMLINK_NAME, deployment.name)


# -----------------------------------------------------------------------------
#
# EXTERNAL COLLABORATORS
#
# -----------------------------------------------------------------------------


class GitProvider:
	"""Repository operations, backed by the `git` command."""

	def __init__(self, git: str = "git"):
		self.git = git

	def resolve_revision(
		self, url: str, revision: str, auth: Optional[RepoAuth] = None
	) -> str:
		"""Resolve REVISION to a full commit hash using a throwaway bare clone."""
		what = f"Error resolving revision {revision}"
		with tempfile.TemporaryDirectory(prefix="mfd-resolve-") as tmp:
			self._run(["clone", "--bare", "--quiet", url, tmp], auth, what)
			output = self._run(
				["-C", tmp, "rev-parse", "--verify", f"{revision}^{{commit}}"],
				None,
				what,
			)
		return output.strip()

	def fetch_and_checkout(
		self,
		url: str,
		commit_hash: str,
		auth: Optional[RepoAuth],
		destination: Path,
	) -> None:
		"""Clone URL into DESTINATION and check out COMMIT_HASH.

		Does nothing when DESTINATION already holds a repository.
		"""
		if (destination / ".git").exists():
			mfd_util_verbose(f"Repository already exists at {destination}")
			return
		self._run(
			["clone", "--quiet", url, str(destination)],
			auth,
			f"Error cloning repository for commit {commit_hash}",
		)
		self._run(
			["-C", str(destination), "checkout", "--quiet", "--detach", commit_hash],
			None,
			f"Error checking out commit {commit_hash}",
		)

	def _auth_options(self, auth: Optional[RepoAuth]) -> list[str]:
		# Passed per invocation so credentials never land in .git/config
		if not auth:
			return []
		credentials = base64.b64encode(
			f"{auth.username}:{auth.password}".encode()
		).decode()
		return ["-c", f"http.extraHeader=Authorization: Basic {credentials}"]

	def _run(self, args: list[str], auth: Optional[RepoAuth], what: str) -> str:
		mfd_util_verbose(f"exec: git {shlex.join(args)}")
		cmd = [self.git] + self._auth_options(auth) + args
		env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
		try:
			result = subprocess.run(
				cmd, capture_output=True, text=True, env=env, check=False
			)
		except FileNotFoundError as e:
			raise VCSError(f"{what}: command not found: {self.git}") from e
		if result.returncode != 0:
			message = f"{what} (exit code {result.returncode})"
			stderr = result.stderr.strip() if result.stderr else ""
			if stderr:
				message += f"\n{stderr}"
			raise VCSError(message)
		return result.stdout


class CommandRunner:
	"""Runs commands with output streamed to the terminal."""

	def run(self, argv: list[str], cwd: Path) -> int:
		"""Run ARGV in CWD and return its exit status."""
		mfd_util_verbose(f"exec in {cwd}: {shlex.join(argv)}")
		sys.stdout.flush()
		try:
			return subprocess.run(argv, cwd=cwd, check=False).returncode
		except FileNotFoundError:
			mfd_util_warn(f"Command not found: {argv[0]}")
			return 127
		except PermissionError:
			mfd_util_warn(f"Command not executable: {argv[0]}")
			return 126


class SystemdManager:
	"""Restarts services through systemctl."""

	def __init__(self, systemctl: str = "systemctl"):
		self.systemctl = systemctl

	def restart(self, unit: str) -> bool:
		sys.stdout.flush()
		try:
			result = subprocess.run([self.systemctl, "restart", unit], check=False)
		except FileNotFoundError:
			mfd_util_warn(f"Command not found: {self.systemctl}")
			return False
		return result.returncode == 0


@dataclasses.dataclass
class Context:
	"""Working root, configuration and collaborators of a lifecycle run."""

	root: LocalRoot
	config: Optional[Config] = None  # Only needed by resolve/fetch/build/restart
	vcs: GitProvider = dataclasses.field(default_factory=GitProvider)
	runner: CommandRunner = dataclasses.field(default_factory=CommandRunner)
	services: SystemdManager = dataclasses.field(default_factory=SystemdManager)
	keep: int = MFD_KEEP_DEPLOYMENTS


# -----------------------------------------------------------------------------
#
# LIFECYCLE
#
# -----------------------------------------------------------------------------


def _mfd_require_config(ctx: Context) -> Config:
	if ctx.config is None:
		raise ConfigInvalidError("No configuration loaded")
	return ctx.config


def mfd_resolve(ctx: Context, revision: str = "HEAD") -> str:
	"""Resolve REVISION (branch, tag, short hash, HEAD) to a full commit hash."""
	config = _mfd_require_config(ctx)
	commit_hash = ctx.vcs.resolve_revision(
		config.repo.url, revision, mfd_config_auth(config)
	)
	mfd_util_verbose(f"Resolved {revision} to {commit_hash}")
	return commit_hash


def mfd_fetch(ctx: Context, deployment: Deployment) -> None:
	"""Clone the repository into the deployment directory at its commit."""
	config = _mfd_require_config(ctx)
	mfd_util_log_op("Fetching", commit=deployment.commit_hash)
	ctx.vcs.fetch_and_checkout(
		config.repo.url,
		deployment.commit_hash,
		mfd_config_auth(config),
		ctx.root.join(deployment.name),
	)


def mfd_run_steps(runner: CommandRunner, steps: list[list[str]], cwd: Path) -> None:
	"""Run STEPS in order in CWD, aborting on the first non-zero exit."""
	for step in steps:
		mfd_util_output(f"$ {shlex.join(step)}")
		returncode = runner.run(step, cwd)
		if returncode != 0:
			raise BuildError(step, returncode)


def mfd_build(ctx: Context, deployment: Deployment) -> None:
	"""Run the configured build commands inside the deployment directory."""
	config = _mfd_require_config(ctx)
	path = ctx.root.join(deployment.name)
	mfd_util_log_op("Building", commit=deployment.commit_hash)
	mfd_run_steps(ctx.runner, config.build.commands or [], path)
	(path / BUILD_MARKER).touch()


def mfd_restart(ctx: Context) -> None:
	"""Restart the configured systemd unit, if any."""
	config = _mfd_require_config(ctx)
	unit = config.systemd.unit
	if not unit:
		mfd_util_verbose("No systemd unit configured, skipping restart")
		return
	mfd_util_log_op(f"Restarting {unit}")
	if not ctx.services.restart(unit):
		raise RestartError(unit)


def mfd_deploy(ctx: Context, commit_hash: str) -> Deployment:
	"""Deploy COMMIT_HASH: fetch, build, activate, restart and clean.

	A built deployment of the same commit is only re-activated and
	restarted. Any failure aborts the deploy and leaves the deployment
	directory in place for inspection; deploying the same commit again
	fetches into that directory and runs the build from the first command.
	"""
	_mfd_require_config(ctx)
	deployments = mfd_store_list(ctx.root)
	try:
		existing = mfd_store_find_by_commit(deployments, commit_hash)
	except DeploymentNotFoundError:
		existing = None

	if existing and mfd_store_is_built(ctx.root, existing):
		mfd_util_log_op(f"Reusing deployment {existing.name}", commit=commit_hash)
		mfd_activate(ctx.root, existing)
		mfd_restart(ctx)
		return existing

	if existing:
		mfd_util_log_op(f"Resuming deployment {existing.name}", commit=commit_hash)
		deployment = existing
	else:
		deployment = mfd_deployment_new(commit_hash)
	mfd_fetch(ctx, deployment)
	mfd_build(ctx, deployment)
	mfd_activate(ctx.root, deployment)
	mfd_restart(ctx)
	mfd_clean(ctx)
	mfd_util_log_op(f"Deployed {deployment.name}", commit=commit_hash)
	return deployment


def mfd_rollback(ctx: Context, restart: bool = False) -> Deployment:
	"""Activate the deployment just older than the active one.

	The service is only restarted when RESTART is set.
	"""
	active = mfd_store_active(ctx.root)
	deployments = mfd_store_list(ctx.root)

	try:
		index = deployments.index(active)
	except ValueError:
		raise DeploymentNotFoundError(
			f"Active deployment {active.name} not found"
		) from None

	if index + 1 >= len(deployments):
		raise NoPreviousDeploymentError("No previous deployment found")

	previous = deployments[index + 1]
	mfd_util_log_op(f"Rolling back to {previous.name}", commit=previous.commit_hash)
	mfd_activate(ctx.root, previous)
	if restart:
		mfd_restart(ctx)
	return previous


def mfd_clean(ctx: Context, keep: Optional[int] = None) -> list[Deployment]:
	"""Remove deployments beyond the newest KEEP, never the active one.

	Returns the removed deployments.
	"""
	if keep is None:
		keep = ctx.keep
	if keep < 0:
		raise ValueError(f"Keep count must not be negative: {keep}")

	active = _mfd_store_active_or_none(ctx.root)
	deployments = mfd_store_list(ctx.root)
	removed: list[Deployment] = []
	if len(deployments) <= keep:
		return removed

	for deployment in deployments[keep:]:
		if deployment == active:
			mfd_util_verbose(f"Keeping active deployment {deployment.name}")
			continue
		mfd_util_log_op(
			f"Removing deployment {deployment.name}", commit=deployment.commit_hash
		)
		ctx.root.remove_tree(deployment.name)
		removed.append(deployment)

	return removed


def mfd_list(ctx: Context) -> list[tuple[Deployment, bool]]:
	"""List deployments newest first, each paired with whether it is active."""
	active = _mfd_store_active_or_none(ctx.root)
	return [(d, d == active) for d in mfd_store_list(ctx.root)]


def mfd_activate_ref(ctx: Context, ref: str) -> Deployment:
	"""Activate an existing deployment given by name or commit hash."""
	deployment = mfd_store_lookup(mfd_store_list(ctx.root), ref)
	mfd_activate(ctx.root, deployment)
	return deployment


def mfd_remove(ctx: Context, ref: str) -> Deployment:
	"""Remove an inactive deployment given by name or commit hash."""
	deployment = mfd_store_lookup(mfd_store_list(ctx.root), ref)
	if deployment == _mfd_store_active_or_none(ctx.root):
		raise ActiveDeploymentError(
			f"Cannot remove active deployment {deployment.name}"
		)
	mfd_util_log_op(
		f"Removing deployment {deployment.name}", commit=deployment.commit_hash
	)
	ctx.root.remove_tree(deployment.name)
	return deployment


# -----------------------------------------------------------------------------
#
# CLI IMPLEMENTATION
#
# -----------------------------------------------------------------------------

MFD_COMMANDS = [
	"list",
	"deploy",
	"resolve",
	"activate",
	"rollback",
	"remove",
	"clean",
	"restart",
	"help",
]


class MFDArgumentParser(argparse.ArgumentParser):
	"""ArgumentParser reporting usage errors on stdout with exit code 1."""

	def error(self, message: str) -> NoReturn:
		"""Print error with available commands."""
		self.print_usage(sys.stdout)
		sys.stdout.write(f"\n{self.prog}: error: {message}\n")
		sys.stdout.write(f"\nAvailable commands: {', '.join(MFD_COMMANDS)}\n")
		sys.stdout.write(
			f"Run '{self.prog} COMMAND --help' for command-specific help.\n"
		)
		sys.exit(1)


def mfd_build_parser() -> argparse.ArgumentParser:
	"""Build argument parser with all subcommands."""
	parser = MFDArgumentParser(
		prog="mfd",
		description="Fetch, build and activate deployments of a git repository",
	)

	# Global options
	parser.add_argument(
		"-C",
		"--root",
		default=MFD_ROOT,
		help=f"Working root holding the deployments (default: {MFD_ROOT})",
	)
	parser.add_argument(
		"-c",
		"--config",
		default=MFD_CONFIG or None,
		help=f"Configuration file (default: ROOT/{CONFIG_FILENAME})",
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
	parser.add_argument(
		"-q", "--quiet", action="store_true", help="Suppress non-error output"
	)
	parser.add_argument(
		"--no-color", action="store_true", help="Disable colored output"
	)
	parser.add_argument("--version", action="store_true", help="Show version")

	subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

	# list
	p_list = subparsers.add_parser("list", aliases=["ls"], help="List deployments")
	p_list.add_argument("--json", action="store_true", help="Output as JSON")

	# deploy
	p_deploy = subparsers.add_parser(
		"deploy", help="Resolve, fetch, build and activate a revision"
	)
	p_deploy.add_argument(
		"revision", nargs="?", default="HEAD", help="Revision (default: HEAD)"
	)

	# resolve
	p_resolve = subparsers.add_parser(
		"resolve", help="Resolve a revision to a commit hash"
	)
	p_resolve.add_argument(
		"revision", nargs="?", default="HEAD", help="Revision (default: HEAD)"
	)

	# activate
	p_activate = subparsers.add_parser("activate", help="Activate a deployment")
	p_activate.add_argument("deployment", help="Deployment name or commit hash")

	# rollback
	p_rollback = subparsers.add_parser(
		"rollback", help="Activate the previous deployment"
	)
	p_rollback.add_argument(
		"--restart",
		action="store_true",
		help="Restart the systemd unit after rolling back",
	)

	# remove
	p_remove = subparsers.add_parser(
		"remove", aliases=["rm"], help="Remove an inactive deployment"
	)
	p_remove.add_argument("deployment", help="Deployment name or commit hash")

	# clean
	p_clean = subparsers.add_parser("clean", help="Remove old deployments")
	p_clean.add_argument(
		"--keep",
		type=int,
		default=MFD_KEEP_DEPLOYMENTS,
		help=f"Number of newest deployments to keep (default: {MFD_KEEP_DEPLOYMENTS})",
	)

	# restart
	subparsers.add_parser("restart", help="Restart the systemd unit")

	# help
	subparsers.add_parser("help", help="Show this help message")

	return parser


def _mfd_context(args: argparse.Namespace, load_config: bool = False) -> Context:
	"""Build the lifecycle context from global options."""
	root = LocalRoot(Path(args.root))
	config = None
	if load_config:
		config_path = Path(args.config) if args.config else root.join(CONFIG_FILENAME)
		mfd_util_verbose(f"Loading configuration from {config_path}")
		config = mfd_config_load(config_path)
	return Context(root=root, config=config)


def _mfd_list_created(deployment: Deployment, iso: bool = False) -> str:
	# Timestamps past the datetime range print as raw seconds.
	try:
		created = deployment.created
	except (OverflowError, OSError, ValueError):
		return str(deployment.created_at)
	return created.isoformat() if iso else created.strftime("%Y-%m-%d %H:%M:%S")


def mfd_cmd_handler_list(args: argparse.Namespace) -> int:
	"""Handle 'list' command."""
	try:
		listing = mfd_list(_mfd_context(args))

		if args.json:
			print(
				json.dumps(
					[
						{
							"name": deployment.name,
							"commit": deployment.commit_hash,
							"created": _mfd_list_created(deployment, iso=True),
							"active": active,
						}
						for deployment, active in listing
					],
					indent=2,
				)
			)
		elif not listing:
			mfd_util_output("No deployments found")
		else:
			print(f"{'DEPLOYMENT':<56} {'CREATED (UTC)':<20} STATUS")
			for deployment, active in listing:
				created = _mfd_list_created(deployment)
				status = (
					mfd_util_color("active", "green") if active else "inactive"
				)
				print(f"{deployment.name:<56} {created:<20} {status}")
		return 0
	except Exception as e:
		mfd_util_error(str(e))
		return 1


def mfd_cmd_handler_deploy(args: argparse.Namespace) -> int:
	"""Handle 'deploy' command."""
	try:
		ctx = _mfd_context(args, load_config=True)
		commit_hash = mfd_resolve(ctx, args.revision)
		mfd_util_log_op(f"Resolved {args.revision} to {commit_hash}")
		mfd_deploy(ctx, commit_hash)
		return 0
	except Exception as e:
		mfd_util_error(str(e))
		return 1


def mfd_cmd_handler_resolve(args: argparse.Namespace) -> int:
	"""Handle 'resolve' command."""
	try:
		ctx = _mfd_context(args, load_config=True)
		print(mfd_resolve(ctx, args.revision))
		return 0
	except Exception as e:
		mfd_util_error(str(e))
		return 1


def mfd_cmd_handler_activate(args: argparse.Namespace) -> int:
	"""Handle 'activate' command."""
	try:
		mfd_activate_ref(_mfd_context(args), args.deployment)
		return 0
	except Exception as e:
		mfd_util_error(str(e))
		return 1


def mfd_cmd_handler_rollback(args: argparse.Namespace) -> int:
	"""Handle 'rollback' command."""
	try:
		ctx = _mfd_context(args, load_config=args.restart)
		mfd_rollback(ctx, restart=args.restart)
		return 0
	except Exception as e:
		mfd_util_error(str(e))
		return 1


def mfd_cmd_handler_remove(args: argparse.Namespace) -> int:
	"""Handle 'remove' command."""
	try:
		mfd_remove(_mfd_context(args), args.deployment)
		return 0
	except Exception as e:
		mfd_util_error(str(e))
		return 1


def mfd_cmd_handler_clean(args: argparse.Namespace) -> int:
	"""Handle 'clean' command."""
	try:
		removed = mfd_clean(_mfd_context(args), keep=args.keep)
		if removed:
			mfd_util_log_op(f"Removed {len(removed)} old deployment(s)")
		else:
			mfd_util_log_op("Nothing to clean")
		return 0
	except Exception as e:
		mfd_util_error(str(e))
		return 1


def mfd_cmd_handler_restart(args: argparse.Namespace) -> int:
	"""Handle 'restart' command."""
	try:
		ctx = _mfd_context(args, load_config=True)
		if not ctx.config.systemd.unit:
			mfd_util_output("No systemd unit configured")
		mfd_restart(ctx)
		return 0
	except Exception as e:
		mfd_util_error(str(e))
		return 1


# --- Main Entry Point ---


def mfd_main(argv: Optional[list[str]] = None) -> int:
	"""Main entry point."""
	global _verbose, _quiet, _no_color, _log_first_op

	parser = mfd_build_parser()
	args = parser.parse_args(argv)

	if args.version:
		print(f"mfd {MFD_VERSION}")
		return 0

	# Set globals from args
	_verbose = args.verbose
	_quiet = args.quiet
	_no_color = args.no_color or MFD_NO_COLOR
	_log_first_op = True

	if not args.command or args.command == "help":
		parser.print_help()
		return 0

	handlers = {
		"list": mfd_cmd_handler_list,
		"ls": mfd_cmd_handler_list,
		"deploy": mfd_cmd_handler_deploy,
		"resolve": mfd_cmd_handler_resolve,
		"activate": mfd_cmd_handler_activate,
		"rollback": mfd_cmd_handler_rollback,
		"remove": mfd_cmd_handler_remove,
		"rm": mfd_cmd_handler_remove,
		"clean": mfd_cmd_handler_clean,
		"restart": mfd_cmd_handler_restart,
	}

	handler = handlers.get(args.command)
	if not handler:
		mfd_util_error(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	sys.exit(mfd_main())

# EOF
