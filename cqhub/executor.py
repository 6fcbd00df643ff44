"""Policy execution: run policy queries against a database and collect the results."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

ExecutionCallback = Callable[[str, bool], None]


class _Cursor(Protocol):
    description: Any

    def execute(self, operation: str) -> Any: ...

    def fetchall(self) -> list[Any]: ...

    def close(self) -> Any: ...


class _Connection(Protocol):
    def cursor(self) -> _Cursor: ...


class PolicyExecutionError(Exception):
    """A policy's query or view could not be executed."""


@dataclass
class Query:
    """A single policy check: a SQL statement and whether it should return rows."""

    name: str
    query: str
    description: str = ""
    expect_output: bool = False


@dataclass
class View:
    """A temporary view that a policy defines for its queries."""

    name: str
    query: Query


@dataclass
class PolicyConfig:
    """A policy with its views, queries and nested sub-policies."""

    name: str
    description: str = ""
    queries: list[Query] = field(default_factory=list)
    views: list[View] = field(default_factory=list)
    policies: list[PolicyConfig] = field(default_factory=list)


@dataclass
class QueryResult:
    """The outcome of one executed query."""

    name: str
    description: str
    columns: list[str] = field(default_factory=list)
    data: list[list[Any]] = field(default_factory=list)
    passed: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Return the result under the keys used in result files."""
        return {
            "name": self.name,
            "description": self.description,
            "result_headers": list(self.columns),
            "result_rows": [list(row) for row in self.data],
            "check_passed": self.passed,
        }


@dataclass
class ExecutionResult:
    """All query results of a policy run, keyed by policy path."""

    passed: bool = True
    results: dict[str, QueryResult] = field(default_factory=dict)


@dataclass
class ExecuteRequest:
    """A request to execute a policy."""

    policy: Any = None
    update_callback: ExecutionCallback | None = None
    stop_on_failure: bool = False
    skip_versioning: bool = False


def policy_path_join(*args: str) -> str:
    """Join policy path elements with "/"."""
    return "/".join(args)


def collect_execution_results(exec_result: ExecutionResult, path: str, *args: QueryResult) -> None:
    """Add query results to an execution result under path, clearing passed on any failure."""
    for res in args:
        if not res.passed:
            exec_result.passed = False
        exec_result.results[policy_path_join(path, res.name)] = res


class Executor:
    """Runs policies over a DB-API connection."""

    def __init__(self, conn: _Connection, logger: logging.Logger | None = None) -> None:
        self.conn = conn
        self.log = logger or logging.getLogger(__name__)

    def execute_policy(self, exec_req: ExecuteRequest, policy: PolicyConfig) -> ExecutionResult | None:
        """Create the policy's views recursively, then run its queries and sub-policies.

        Returns None when execution stopped on a failed check.
        """
        self.create_views(policy)
        return self._execute_policy(policy, exec_req)

    def _execute_policy(self, policy: PolicyConfig, exec_req: ExecuteRequest) -> ExecutionResult | None:
        exec_results = ExecutionResult()
        try:
            results = self._execute_policy_queries(policy, exec_req)
        except PolicyExecutionError as exc:
            self.log.error("failed to execute policy queries: policy=%s err=%s", policy.name, exc)
            raise
        collect_execution_results(exec_results, policy.name, *results)
        if exec_req.update_callback is not None:
            for res in results:
                exec_req.update_callback(res.description, res.passed)
        if exec_req.stop_on_failure and not exec_results.passed:
            return None

        for sub_policy in policy.policies:
            self.log.debug("executing policy: policy=%s", sub_policy.name)
            try:
                sub_result = self._execute_policy(sub_policy, exec_req)
            except PolicyExecutionError as exc:
                self.log.error("failed to execute policy: policy=%s err=%s", sub_policy.name, exc)
                raise
            if sub_result is None:
                return None
            if not sub_result.passed:
                exec_results.passed = False
            for key, res in sub_result.results.items():
                exec_results.results[policy_path_join(policy.name, key)] = res
        return exec_results

    def _execute_policy_queries(self, policy: PolicyConfig, exec_req: ExecuteRequest) -> list[QueryResult]:
        results: list[QueryResult] = []
        for query in policy.queries:
            try:
                res = self.execute_query(query)
            except Exception as exc:
                raise PolicyExecutionError(f"{policy.name} - {query.name}: {exc}") from exc
            results.append(res)
            if exec_req.stop_on_failure and not res.passed:
                break
        return results

    def execute_query(self, query: Query) -> QueryResult:
        """Run a query and decide whether it passed from the rows it returned."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(query.query)
            description = cursor.description
            columns = [str(column[0]) for column in description] if description else []
            data = [list(row) for row in cursor.fetchall()] if description else []
        finally:
            cursor.close()
        passed = bool(data) == query.expect_output
        return QueryResult(
            name=query.name,
            description=query.description,
            columns=columns,
            data=data,
            passed=passed,
        )

    def create_views(self, policy: PolicyConfig) -> None:
        """Create the temporary views of a policy and of all its sub-policies."""
        for view in policy.views:
            self.log.debug("creating policy view: policy=%s view=%s", policy.name, view.name)
            try:
                self.create_view(view)
            except Exception as exc:
                raise PolicyExecutionError(f"{policy.name} - {view.name}: {exc}") from exc
        for sub_policy in policy.policies:
            self.create_views(sub_policy)

    def create_view(self, view: View) -> None:
        """Create or replace the view as a temporary view."""
        statement = f"CREATE OR REPLACE TEMPORARY VIEW {view.name} AS {view.query.query}"
        self.execute_query(dataclasses.replace(view.query, query=statement))