import sqlite3

import pytest

from cqhub.executor import (
    ExecuteRequest,
    ExecutionResult,
    Executor,
    PolicyConfig,
    PolicyExecutionError,
    Query,
    QueryResult,
    View,
    collect_execution_results,
    policy_path_join,
)

TABLE = "test_table"


class _SQLiteCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def description(self):
        return self._cursor.description

    def execute(self, sql):
        sql = sql.replace("CREATE OR REPLACE TEMPORARY VIEW", "CREATE TEMP VIEW IF NOT EXISTS")
        return self._cursor.execute(sql)

    def fetchall(self):
        return self._cursor.fetchall()

    def close(self):
        self._cursor.close()


class _SQLiteConnection:
    def __init__(self, conn):
        self._conn = conn

    def cursor(self):
        return _SQLiteCursor(self._conn.cursor())


class _RecordingCursor:
    def __init__(self, statements):
        self._statements = statements
        self.description = None

    def execute(self, sql):
        self._statements.append(sql)

    def fetchall(self):
        return []

    def close(self):
        pass


class _RecordingConnection:
    def __init__(self):
        self.statements = []

    def cursor(self):
        return _RecordingCursor(self.statements)


@pytest.fixture
def executor():
    conn = sqlite3.connect(":memory:")
    conn.execute(f"CREATE TABLE {TABLE} (id INTEGER PRIMARY KEY, name VARCHAR(50) NOT NULL)")
    conn.execute(f"INSERT INTO {TABLE} VALUES (1, 'john')")
    yield Executor(_SQLiteConnection(conn))
    conn.close()


def test_execute_query_no_output(executor):
    res = executor.execute_query(
        Query(name="nooutput", query=f"SELECT * FROM {TABLE} WHERE name LIKE 'peter'", expect_output=False)
    )
    assert res.data == []
    assert res.passed is True
    assert res.columns == ["id", "name"]


def test_execute_query_output(executor):
    res = executor.execute_query(
        Query(name="output", query=f"SELECT * FROM {TABLE} WHERE name LIKE 'john'", expect_output=True)
    )
    assert res.data == [[1, "john"]]
    assert res.passed is True


def test_execute_query_fails_when_expectation_not_met(executor):
    res = executor.execute_query(Query(name="q", query=f"SELECT * FROM {TABLE}", expect_output=False))
    assert res.passed is False


def test_execute_policies_multiple_queries(executor):
    policy = PolicyConfig(
        name="multiple_queries",
        queries=[
            Query(name="query-1", query=f"SELECT * from {TABLE} WHERE name LIKE 'peter'"),
            Query(name="query-2", query=f"SELECT * from {TABLE} WHERE name LIKE 'john'", expect_output=True),
        ],
    )
    res = executor.execute_policy(ExecuteRequest(), policy)
    assert res.passed is True
    assert set(res.results) == {"multiple_queries/query-1", "multiple_queries/query-2"}


def test_execute_policies_query_with_dependent_view(executor):
    policy = PolicyConfig(
        name="query_with_dependent_view",
        views=[
            View(
                name="testview",
                query=Query(name="get-john", query=f"SELECT * FROM {TABLE} WHERE name LIKE 'john'"),
            )
        ],
        queries=[Query(name="query-with-view", query="SELECT * from testview", expect_output=True)],
    )
    res = executor.execute_policy(ExecuteRequest(), policy)
    assert res.passed is True
    assert res.results["query_with_dependent_view/query-with-view"].data == [[1, "john"]]


def test_execute_policies_broken_query(executor):
    policy = PolicyConfig(
        name="broken_policy_query",
        queries=[Query(name="broken-query", query="SECT * OM testview")],
    )
    with pytest.raises(PolicyExecutionError) as info:
        executor.execute_policy(ExecuteRequest(), policy)
    assert str(info.value).startswith("broken_policy_query - broken-query: ")
    assert "SECT" in str(info.value)


def test_execute_policies_broken_view(executor):
    policy = PolicyConfig(
        name="broken_policy_view",
        views=[View(name="brokenview", query=Query(name="broken-query-view", query="TCELES * MOFR *"))],
    )
    with pytest.raises(PolicyExecutionError) as info:
        executor.execute_policy(ExecuteRequest(), policy)
    assert str(info.value).startswith("broken_policy_view - brokenview: ")
    assert "TCELES" in str(info.value)


def test_stop_on_failure_returns_none(executor):
    calls = []
    policy = PolicyConfig(
        name="p",
        queries=[
            Query(name="fails", query=f"SELECT * FROM {TABLE}", description="first"),
            Query(name="never", query=f"SELECT * FROM {TABLE}", expect_output=True, description="second"),
        ],
    )
    req = ExecuteRequest(update_callback=lambda name, passed: calls.append((name, passed)), stop_on_failure=True)
    assert executor.execute_policy(req, policy) is None
    assert calls == [("first", False)]


def test_failures_collected_without_stop(executor):
    calls = []
    policy = PolicyConfig(
        name="p",
        queries=[
            Query(name="fails", query=f"SELECT * FROM {TABLE}", description="first"),
            Query(name="ok", query=f"SELECT * FROM {TABLE}", expect_output=True, description="second"),
        ],
    )
    req = ExecuteRequest(update_callback=lambda name, passed: calls.append((name, passed)))
    res = executor.execute_policy(req, policy)
    assert res.passed is False
    assert calls == [("first", False), ("second", True)]


def test_sub_policies_keys_and_views(executor):
    policy = PolicyConfig(
        name="test-policy",
        queries=[Query(name="top-level-query", query="SELECT * FROM subview", expect_output=True)],
        policies=[
            PolicyConfig(
                name="sub-policy-1",
                views=[View(name="subview", query=Query(name="v", query=f"SELECT * FROM {TABLE}"))],
                queries=[Query(name="sub-level-query", query=f"SELECT * FROM {TABLE} WHERE id = 2")],
            ),
            PolicyConfig(
                name="sub-policy-2",
                queries=[Query(name="sub-level-query", query=f"SELECT * FROM {TABLE}", expect_output=True)],
            ),
        ],
    )
    res = executor.execute_policy(ExecuteRequest(), policy)
    assert res.passed is True
    assert set(res.results) == {
        "test-policy/top-level-query",
        "test-policy/sub-policy-1/sub-level-query",
        "test-policy/sub-policy-2/sub-level-query",
    }


def test_failing_sub_policy_marks_parent_failed(executor):
    policy = PolicyConfig(
        name="parent",
        policies=[PolicyConfig(name="child", queries=[Query(name="q", query=f"SELECT * FROM {TABLE}")])],
    )
    res = executor.execute_policy(ExecuteRequest(), policy)
    assert res.passed is False
    assert res.results["parent/child/q"].passed is False


def test_create_view_statement_and_no_mutation():
    conn = _RecordingConnection()
    view = View(name="v1", query=Query(name="q", query="SELECT 1"))
    Executor(conn).create_view(view)
    assert conn.statements == ["CREATE OR REPLACE TEMPORARY VIEW v1 AS SELECT 1"]
    assert view.query.query == "SELECT 1"


def test_create_views_recurses_into_sub_policies():
    conn = _RecordingConnection()
    policy = PolicyConfig(
        name="a",
        views=[View(name="va", query=Query(name="q", query="SELECT 1"))],
        policies=[PolicyConfig(name="b", views=[View(name="vb", query=Query(name="q", query="SELECT 2"))])],
    )
    Executor(conn).create_views(policy)
    assert conn.statements == [
        "CREATE OR REPLACE TEMPORARY VIEW va AS SELECT 1",
        "CREATE OR REPLACE TEMPORARY VIEW vb AS SELECT 2",
    ]


def test_policy_path_join():
    assert policy_path_join("a", "b", "c") == "a/b/c"
    assert policy_path_join("", "x") == "/x"


def test_collect_execution_results():
    result = ExecutionResult()
    collect_execution_results(
        result,
        "pol",
        QueryResult(name="ok", description="", passed=True),
        QueryResult(name="bad", description="", passed=False),
    )
    assert result.passed is False
    assert set(result.results) == {"pol/ok", "pol/bad"}


def test_query_result_to_dict():
    res = QueryResult(name="n", description="d", columns=["id"], data=[[1]], passed=True)
    assert res.to_dict() == {
        "name": "n",
        "description": "d",
        "result_headers": ["id"],
        "result_rows": [[1]],
        "check_passed": True,
    }