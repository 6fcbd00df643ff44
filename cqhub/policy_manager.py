"""Policy hub: fetch policy repositories with git and run their policies."""

from __future__ import annotations

import json
import logging
import os
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urljoin

from packaging.version import InvalidVersion, Version

from cqhub.executor import (
    ExecuteRequest,
    ExecutionResult,
    Executor,
    PolicyConfig,
    Query,
    View,
    collect_execution_results,
    policy_path_join,
)
from cqhub.ui import COLOR_PROGRESS, colorized_output

PATH_DELIMITER = "/"
VERSION_DELIMITER = "@"
CLOUDQUERY_ORG = "cloudquery-policies"
GITHUB_URL = "https://github.com/"
DEFAULT_POLICY_FILE_NAME = "policy"
DEFAULT_SUPPORTED_POLICY_EXTENSIONS = ("hcl", "json")

PolicyLoader = Callable[[Path], "list[PolicyConfig] | None"]


class PolicyManagerError(Exception):
    """A policy could not be parsed, downloaded or run."""


class _GitError(Exception):
    pass


def _git(*args: str, cwd: str | os.PathLike[str] | None = None) -> str:
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise _GitError("git executable not found") from exc
    if completed.returncode != 0:
        message = completed.stderr.strip() or f"git exited with status {completed.returncode}"
        raise _GitError(message)
    return completed.stdout


def _repo_url(base: str, organization: str, repository: str) -> str:
    return urljoin(urljoin(base, organization + "/"), repository + ".git")


@dataclass
class HubPolicy:
    """A policy located in a policy hub repository."""

    organization: str = ""
    repository: str = ""
    repository_path: str = ""
    version: str = ""
    sub_path: str = ""

    def github_url(self) -> str:
        """Return the clone URL of the policy repository."""
        return _repo_url(GITHUB_URL, self.organization, self.repository)

    def checkout_version(self, repo_folder: str | os.PathLike[str]) -> None:
        """Fetch the repository and check out the requested tag, or the highest version tag."""
        try:
            _git("rev-parse", "--git-dir", cwd=repo_folder)
        except (_GitError, OSError) as exc:
            raise PolicyManagerError(f"failed to open policy repository folder: {exc}") from exc
        try:
            _git("fetch", "--tags", "--force", cwd=repo_folder)
        except _GitError as exc:
            raise PolicyManagerError(f"failed to fetch latest changes: {exc}") from exc

        version = self.version
        if not version:
            try:
                tags = _git("tag", "--list", cwd=repo_folder).split()
            except _GitError as exc:
                raise PolicyManagerError(f"failed to list repository tags: {exc}") from exc
            versions: dict[Version, str] = {}
            for tag in tags:
                try:
                    versions[Version(tag)] = tag
                except InvalidVersion:
                    continue
            if versions:
                version = versions[max(versions)]

        try:
            commit = _git("rev-parse", "--verify", "--quiet", f"refs/tags/{version}^{{commit}}", cwd=repo_folder)
        except _GitError as exc:
            raise PolicyManagerError(f"failed to find provided tag ({version}): {exc}") from exc
        try:
            _git("checkout", "--force", "--detach", commit.strip(), cwd=repo_folder)
        except _GitError as exc:
            raise PolicyManagerError(f"failed to checkout tag ({version}): {exc}") from exc


def _query_from_dict(data: dict[str, Any]) -> Query:
    return Query(
        name=data.get("name", ""),
        query=data["query"],
        description=data.get("description", ""),
        expect_output=bool(data.get("expect_output", False)),
    )


def _policy_from_dict(data: dict[str, Any]) -> PolicyConfig:
    return PolicyConfig(
        name=data["name"],
        description=data.get("description", ""),
        queries=[_query_from_dict(q) for q in data.get("queries", [])],
        views=[View(name=v["name"], query=_query_from_dict(v["query"])) for v in data.get("views", [])],
        policies=[_policy_from_dict(p) for p in data.get("policies", [])],
    )


def _load_policies(path: Path) -> list[PolicyConfig] | None:
    if path.suffix != ".json":
        raise PolicyManagerError(f"failed to load policy file: unsupported policy file format {path.name!r}")
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise PolicyManagerError(f"failed to load policy file: {exc}") from exc
    try:
        raw = document.get("policies")
        if raw is None:
            return None
        return [_policy_from_dict(item) for item in raw]
    except (AttributeError, KeyError, TypeError) as exc:
        raise PolicyManagerError(f"failed to parse policy file: {exc!r}") from exc


class PolicyManager:
    """Downloads policies from the policy hub and runs them against the database."""

    def __init__(
        self,
        policy_directory: str | os.PathLike[str],
        connect: Callable[[], Any] | None = None,
        logger: logging.Logger | None = None,
        loader: PolicyLoader | None = None,
        git_base_url: str = GITHUB_URL,
    ) -> None:
        self.policy_directory = Path(policy_directory)
        self.connect = connect
        self.logger = logger or logging.getLogger(__name__)
        self.loader = loader or _load_policies
        self.git_base_url = git_base_url

    def parse_policy_hub_path(self, args: list[str], sub_policy_path: str) -> HubPolicy:
        """Parse "[org/]repository[@tag] [repository-path]" into a HubPolicy."""
        if len(args) < 1:
            raise PolicyManagerError(f"invalid policy path. Repository name is required but got {args!r}")
        policy = HubPolicy(sub_path=sub_policy_path)
        org_repo = args[0].split(PATH_DELIMITER)
        if len(org_repo) == 2:
            policy.organization, policy.repository = org_repo
        elif len(org_repo) == 1:
            policy.repository = org_repo[0]
            policy.organization = CLOUDQUERY_ORG
        else:
            raise PolicyManagerError(f"invalid policy path. Repository name malformed: {args[0]}")

        version_split = policy.repository.split(VERSION_DELIMITER)
        if len(version_split) == 2:
            policy.repository, policy.version = version_split

        if len(args) == 2:
            policy.repository_path = args[1]
        return policy

    def download_policy(self, policy: HubPolicy) -> None:
        """Clone the policy repository into the local policy directory, if not there yet."""
        org_folder = self.policy_directory / policy.organization
        try:
            os.makedirs(org_folder, mode=0o744, exist_ok=True)
        except OSError as exc:
            raise PolicyManagerError(f"failed to create organization policy directory: {org_folder}") from exc

        git_url = _repo_url(self.git_base_url, policy.organization, policy.repository)
        if policy.version:
            colorized_output(
                COLOR_PROGRESS, "Cloning Policy %s/%s@%s\n", policy.organization, policy.repository, policy.version
            )
        else:
            colorized_output(COLOR_PROGRESS, "Cloning Policy %s/%s\n", policy.organization, policy.repository)

        repo_path = org_folder / policy.repository
        if repo_path.is_dir() and any(repo_path.iterdir()):
            try:
                _git("rev-parse", "--git-dir", cwd=repo_path)
            except _GitError as exc:
                raise PolicyManagerError(f"failed to open repository: {exc}") from exc
            return
        try:
            _git("clone", git_url, str(repo_path))
        except _GitError as exc:
            raise PolicyManagerError(f"failed to clone repository: {exc}") from exc

    def run_policy(self, exec_req: ExecuteRequest) -> ExecutionResult | None:
        """Run a downloaded policy, or only the sub-policy or query named by its sub path."""
        policy: HubPolicy = exec_req.policy
        org_policy = os.path.join(policy.organization, policy.repository)
        repo_folder = self.policy_directory / org_policy
        if not repo_folder.is_dir():
            raise PolicyManagerError(
                f"could not find policy '{org_policy}' locally. Try to download the policy first"
            )
        self.logger.debug("found repo folder: path=%s", repo_folder)

        if not exec_req.skip_versioning:
            try:
                policy.checkout_version(repo_folder)
            except PolicyManagerError as exc:
                raise PolicyManagerError(f"failed to checkout repository tag: {exc}") from exc

        policy_folder = repo_folder
        if policy.repository_path:
            policy_folder = repo_folder / policy.repository_path
            if not policy_folder.is_dir():
                raise PolicyManagerError(
                    f"could not find policy '{org_policy}' in the folder '{policy.repository_path}'. "
                    "Try to download the policy first"
                )
            self.logger.debug("internal repo folder set: path=%s", policy_folder)

        policy_file = next(
            (
                candidate
                for ext in DEFAULT_SUPPORTED_POLICY_EXTENSIONS
                if (candidate := policy_folder / f"{DEFAULT_POLICY_FILE_NAME}.{ext}").exists()
            ),
            None,
        )
        if policy_file is None:
            raise PolicyManagerError(
                f"failed to find policy file; policy.{list(DEFAULT_SUPPORTED_POLICY_EXTENSIONS)!r} "
                f"not found in {policy_folder}"
            )
        self.logger.debug("policy file found: path=%s", policy_file)

        policies = self.loader(policy_file)
        self.logger.debug("parsed policy file: policies=%s", policies)
        if policies is None:
            return None

        if self.connect is None:
            raise PolicyManagerError(
                "failed to acquire connection from the connection pool: no database connection configured"
            )
        try:
            conn = self.connect()
        except Exception as exc:
            raise PolicyManagerError(f"failed to acquire connection from the connection pool: {exc}") from exc

        try:
            policy_map = self.traverse_policies(policies, "", {})
            executor = Executor(conn, self.logger)
            results: ExecutionResult | None = None
            if not policy.sub_path:
                self.logger.debug("no policy sub path defined; executing all policies")
                for top in policies:
                    try:
                        results = executor.execute_policy(exec_req, top)
                    except Exception as exc:
                        raise PolicyManagerError(f"failed to run policies: {exc}") from exc
            else:
                self.logger.debug("policy sub path defined; only executing sub policy/query: %s", policy.sub_path)
                try:
                    results = self._run_sub_policy_or_query(executor, policy_map, policy.sub_path, exec_req)
                except Exception as exc:
                    raise PolicyManagerError(f"failed to run sub policy/query: {exc}") from exc
            return results
        finally:
            close = getattr(conn, "close", None)
            if close is not None:
                close()

    def _run_sub_policy_or_query(
        self,
        executor: Executor,
        policy_map: dict[str, PolicyConfig],
        sub_path: str,
        exec_req: ExecuteRequest,
    ) -> ExecutionResult | None:
        sub_policy = policy_map.get(sub_path)
        if sub_policy is not None:
            self.logger.debug("running sub policy only: policy=%s", sub_policy.name)
            return executor.execute_policy(exec_req, sub_policy)

        path_split = sub_path.split(PATH_DELIMITER)
        if len(path_split) <= 1:
            raise PolicyManagerError(f"malformed sub path: {sub_path}")
        policy_path, element_name = path_split[-2], path_split[-1]

        parent = policy_map.get(policy_path)
        if parent is None:
            raise PolicyManagerError(f"cannot find sub query parent policy {policy_path} in {sub_path}")

        for query in parent.queries:
            if query.name == element_name:
                res = executor.execute_query(query)
                exec_results = ExecutionResult()
                collect_execution_results(exec_results, policy_path, res)
                if exec_req.update_callback is not None:
                    exec_req.update_callback(query.name, exec_results.passed)
                return exec_results
        raise PolicyManagerError(f"failed to find sub policy/query: {sub_path}")

    def traverse_policies(
        self,
        policies: list[PolicyConfig],
        level_path: str,
        policy_map: dict[str, PolicyConfig],
    ) -> dict[str, PolicyConfig]:
        """Record every policy and sub-policy in policy_map under its level path."""
        for policy in policies:
            sub_level_path = policy_path_join(level_path, policy.name)
            policy_map[sub_level_path] = policy
            self.logger.debug("added policy to policy map: key=%s", sub_level_path)
            if policy.policies:
                self.traverse_policies(policy.policies, sub_level_path, policy_map)
        return policy_map