"""Tests for listing deployments and resolving the active one."""

import os

import pytest

import mfd
from conftest import HASH_A, HASH_B, HASH_C


class TestStoreList:
	"""Tests for mfd_store_list."""

	def test_empty_root(self, root):
		assert mfd.mfd_store_list(root) == []

	def test_sorted_newest_first(self, root, make_deployment):
		middle = make_deployment(200, HASH_B)
		oldest = make_deployment(100, HASH_A)
		newest = make_deployment(300, HASH_C)

		assert mfd.mfd_store_list(root) == [newest, middle, oldest]

	def test_skips_invalid_names_and_files(self, root, make_deployment):
		valid = make_deployment(100, HASH_A)
		root.join("node_modules").mkdir()
		root.join(".mfd_100_" + HASH_B).mkdir()
		root.join(f"mfd_200_{HASH_B}").write_text("a file, not a directory")
		root.join("mfd.toml").write_text("")

		assert mfd.mfd_store_list(root) == [valid]

	def test_active_symlink_is_not_listed(self, root, make_deployment):
		deployment = make_deployment(100, HASH_A)
		os.symlink(deployment.name, root.join("active"))
		# A symlink with a valid deployment name is not a deployment either
		os.symlink(deployment.name, root.join(f"mfd_200_{HASH_B}"))

		assert mfd.mfd_store_list(root) == [deployment]

	def test_missing_root_raises(self, tmp_path):
		with pytest.raises(FileNotFoundError):
			mfd.mfd_store_list(mfd.LocalRoot(tmp_path / "missing"))


class TestStoreFind:
	"""Tests for lookups by commit hash and reference."""

	def test_find_by_commit_returns_first_match(self):
		newer = mfd.Deployment(300, HASH_A)
		other = mfd.Deployment(200, HASH_B)
		older = mfd.Deployment(100, HASH_A)

		found = mfd.mfd_store_find_by_commit([newer, other, older], HASH_A)
		assert found is newer

	def test_find_by_commit_not_found(self):
		with pytest.raises(mfd.DeploymentNotFoundError):
			mfd.mfd_store_find_by_commit([mfd.Deployment(100, HASH_A)], HASH_B)

	def test_lookup_by_name(self):
		deployments = [mfd.Deployment(200, HASH_B), mfd.Deployment(100, HASH_A)]
		assert mfd.mfd_store_lookup(deployments, f"mfd_100_{HASH_A}") == deployments[1]

	def test_lookup_by_commit_hash(self):
		deployments = [mfd.Deployment(200, HASH_B), mfd.Deployment(100, HASH_A)]
		assert mfd.mfd_store_lookup(deployments, HASH_B) == deployments[0]

	def test_lookup_unknown_name(self):
		with pytest.raises(mfd.DeploymentNotFoundError):
			mfd.mfd_store_lookup([mfd.Deployment(100, HASH_A)], f"mfd_999_{HASH_A}")


class TestStoreActive:
	"""Tests for mfd_store_active."""

	def test_missing_symlink(self, root):
		with pytest.raises(mfd.DeploymentNotFoundError):
			mfd.mfd_store_active(root)

	def test_valid_target(self, root, make_deployment):
		deployment = make_deployment(100, HASH_A)
		os.symlink(deployment.name, root.join("active"))

		assert mfd.mfd_store_active(root) == deployment

	def test_dangling_but_valid_target(self, root):
		os.symlink(f"mfd_100_{HASH_A}", root.join("active"))

		assert mfd.mfd_store_active(root) == mfd.Deployment(100, HASH_A)

	def test_garbled_target(self, root):
		os.symlink("somewhere-else", root.join("active"))

		with pytest.raises(mfd.IdentityInvalidError) as exc_info:
			mfd.mfd_store_active(root)
		assert "somewhere-else" in str(exc_info.value)

	def test_regular_file_is_an_error(self, root):
		root.join("active").write_text("not a link")

		with pytest.raises(OSError):
			mfd.mfd_store_active(root)
