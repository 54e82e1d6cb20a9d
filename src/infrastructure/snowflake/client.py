"""
Snowflake database connection management.

Provides connection factory and context manager for Snowflake operations.
Includes mock mode with in-memory storage for local development and tests.

Using the repository pattern means most code never touches this module
directly - it goes through the repositories, which translate between domain
models and database rows.
"""

import base64
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator, Iterator, Optional, Protocol

logger = logging.getLogger(__name__)


class SnowflakeConnectionError(Exception):
    """Raised when Snowflake connection fails."""
    pass


class SnowflakeConnection(Protocol):
    """
    Protocol for Snowflake connections.

    Using a protocol means tests can provide a mock without
    importing the actual snowflake-connector-python.
    """

    def cursor(self): ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_base64: Optional[str] = None
    database: str = "COACHING"
    schema: str = "MESSAGING"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None


def _load_private_key(pem_bytes: bytes) -> bytes:
    """
    Convert a PEM private key into the DER bytes Snowflake expects.

    Snowflake requires the private key as a bytes object, not a file path.
    """
    from cryptography.hazmat.backends import default_backend
    from cryptography.hazmat.primitives import serialization

    private_key = serialization.load_pem_private_key(
        pem_bytes,
        password=None,  # No password on the key
        backend=default_backend()
    )

    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def _read_private_key(config: SnowflakeConfig) -> Optional[bytes]:
    if config.private_key_path:
        with open(config.private_key_path, 'rb') as key_file:
            return _load_private_key(key_file.read())
    if config.private_key_base64:
        return _load_private_key(base64.b64decode(config.private_key_base64))
    return None


@contextmanager
def get_snowflake_connection(config: SnowflakeConfig) -> Generator[SnowflakeConnection, None, None]:
    """
    Provide Snowflake connection with automatic cleanup.

    Supports both password and key-pair authentication:
    - If a private key (file or base64) is set, uses key-pair auth
    - Otherwise, uses password auth

    Usage:
        with get_snowflake_connection(config) as conn:
            cursor = conn.cursor()
            # do work
            conn.commit()
    """
    try:
        import snowflake.connector
    except ImportError:
        raise ImportError(
            "snowflake-connector-python is required. "
            "Install with: pip install snowflake-connector-python"
        )

    connect_params = {
        'account': config.account,
        'user': config.user,
        'database': config.database,
        'schema': config.schema,
        'warehouse': config.warehouse,
        'role': config.role,
        'client_session_keep_alive': True,
    }

    private_key = _read_private_key(config)
    if private_key:
        logger.info("Using key-pair authentication for Snowflake")
        connect_params['private_key'] = private_key
    elif config.password:
        logger.info("Using password authentication for Snowflake")
        connect_params['password'] = config.password
    else:
        raise SnowflakeConnectionError(
            "Either password or a private key must be provided"
        )

    try:
        conn = snowflake.connector.connect(**connect_params)
    except snowflake.connector.errors.DatabaseError as e:
        logger.error(
            "Snowflake connection failed",
            extra={"error": str(e), "account": config.account}
        )
        raise SnowflakeConnectionError(f"Database connection failed: {e}")

    logger.debug(
        "Established Snowflake connection",
        extra={
            "account": config.account,
            "database": config.database,
            "schema": config.schema,
        }
    )

    try:
        yield conn
    finally:
        try:
            conn.close()
            logger.debug("Closed Snowflake connection")
        except Exception as e:
            logger.warning(
                "Error closing Snowflake connection",
                extra={"error": str(e)}
            )


# ---------------------------------------------------------------------------
# Mock Connection for Local Development
# ---------------------------------------------------------------------------

class MockDatabaseError(Exception):
    """Raised by the mock cursor for injected failures and unsupported SQL."""
    pass


_SELECT_RE = re.compile(
    r"^SELECT (?P<columns>.+?) FROM (?P<table>\w+)"
    r"(?: (?:AS )?(?!(?:LEFT|INNER|JOIN|WHERE|ORDER|LIMIT)\b)(?P<alias>\w+))?"
    r"(?P<joins>(?: (?:LEFT |INNER )?JOIN .+?)*?)"
    r"(?: WHERE (?P<where>.+?))?"
    r"(?: ORDER BY (?P<order>.+?))?"
    r"(?: LIMIT (?P<limit>\S+))?$",
    re.IGNORECASE,
)
_JOIN_RE = re.compile(
    r"(?P<kind>LEFT |INNER )?JOIN (?P<table>\w+)"
    r"(?: (?:AS )?(?!ON\b)(?P<alias>\w+))? ON (?P<left>[\w.]+) = (?P<right>[\w.]+)",
    re.IGNORECASE,
)
_INSERT_RE = re.compile(
    r"^INSERT INTO (?P<table>\w+) \((?P<columns>.+?)\) VALUES \((?P<values>.+)\)$",
    re.IGNORECASE,
)
_UPDATE_RE = re.compile(
    r"^UPDATE (?P<table>\w+)(?: (?!SET\b)(?P<alias>\w+))? SET (?P<assignments>.+?)"
    r"(?: WHERE (?P<where>.+))?$",
    re.IGNORECASE,
)
_DELETE_RE = re.compile(
    r"^DELETE FROM (?P<table>\w+)(?: (?!WHERE\b)(?P<alias>\w+))?(?: WHERE (?P<where>.+))?$",
    re.IGNORECASE,
)
_IS_NULL_RE = re.compile(r"^(?P<column>[\w.]+) IS (?P<negate>NOT )?NULL$", re.IGNORECASE)
_IN_RE = re.compile(r"^(?P<column>[\w.]+) IN \((?P<items>.+)\)$", re.IGNORECASE)
_COMPARE_RE = re.compile(r"^(?P<column>[\w.]+) ?(?P<op><=|>=|<>|!=|=|<|>) ?(?P<operand>.+)$")
_INCREMENT_RE = re.compile(r"^(?P<column>\w+) ?\+ ?(?P<amount>\d+)$")

_COMPARATORS = {
    "=": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<>": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


def _split_csv(text: str) -> list[str]:
    return [part.strip() for part in text.split(",") if part.strip()]


def _bind(token: str, params: Iterator[Any]) -> Any:
    """Resolve a value token: placeholder, NULL, quoted string or number."""
    token = token.strip()
    if token == "%s":
        return next(params)
    if token.upper() == "NULL":
        return None
    if token.startswith("'") and token.endswith("'"):
        return token[1:-1]
    try:
        return int(token)
    except ValueError:
        return float(token)


def _column(name: str) -> str:
    return name.split(".")[-1].lower()


class MockSnowflakeCursor:
    """
    Mock Snowflake cursor for testing.

    Evaluates the small SQL dialect the repositories use against in-memory
    tables: single-table INSERT/UPDATE/DELETE, and SELECT with LEFT/INNER
    equi-joins, AND-ed WHERE conditions, ORDER BY and LIMIT. Parameters use
    the connector's %s style and are bound in textual order.
    """

    def __init__(self, connection: 'MockSnowflakeConnection') -> None:
        self._connection = connection
        self._storage = connection._storage
        self._results: list[tuple] = []
        self._rowcount: int = 0

    def execute(self, query: str, params: Optional[tuple] = None) -> 'MockSnowflakeCursor':
        sql = " ".join(query.split())
        logger.debug(
            "Mock cursor execute",
            extra={"query": sql[:100], "params": params}
        )

        self._connection._check_failure(sql)

        bound = iter(params or ())
        upper = sql.upper()
        self._results = []
        self._rowcount = 0

        if upper == "SELECT 1":
            self._results = [(1,)]
        elif upper.startswith("SELECT"):
            self._handle_select(sql, bound)
        elif upper.startswith("INSERT INTO"):
            self._handle_insert(sql, bound)
        elif upper.startswith("UPDATE"):
            self._handle_update(sql, bound)
        elif upper.startswith("DELETE FROM"):
            self._handle_delete(sql, bound)
        else:
            raise MockDatabaseError(f"Mock cursor cannot execute: {sql[:60]}")

        return self

    # -- statement handlers --------------------------------------------------

    def _handle_insert(self, sql: str, params: Iterator[Any]) -> None:
        match = _INSERT_RE.match(sql)
        if not match:
            raise MockDatabaseError(f"Unsupported INSERT: {sql[:60]}")

        columns = [_column(c) for c in _split_csv(match["columns"])]
        values = [_bind(v, params) for v in _split_csv(match["values"])]
        if len(columns) != len(values):
            raise MockDatabaseError("INSERT column/value count mismatch")

        self._table(match["table"]).append(dict(zip(columns, values)))
        self._rowcount = 1

    def _handle_update(self, sql: str, params: Iterator[Any]) -> None:
        match = _UPDATE_RE.match(sql)
        if not match:
            raise MockDatabaseError(f"Unsupported UPDATE: {sql[:60]}")

        assignments = []
        for item in _split_csv(match["assignments"]):
            column, _, expression = item.partition("=")
            column = _column(column.strip())
            expression = expression.strip()
            increment = _INCREMENT_RE.match(expression)
            if increment and _column(increment["column"]) == column:
                assignments.append((column, "increment", int(increment["amount"])))
            else:
                assignments.append((column, "set", _bind(expression, params)))

        predicate = self._compile_where(match["where"], params)
        count = 0
        for row in self._table(match["table"]):
            if not predicate({None: row}):
                continue
            for column, action, value in assignments:
                if action == "increment":
                    row[column] = (row.get(column) or 0) + value
                else:
                    row[column] = value
            count += 1
        self._rowcount = count

    def _handle_delete(self, sql: str, params: Iterator[Any]) -> None:
        match = _DELETE_RE.match(sql)
        if not match:
            raise MockDatabaseError(f"Unsupported DELETE: {sql[:60]}")

        predicate = self._compile_where(match["where"], params)
        rows = self._table(match["table"])
        keep = [row for row in rows if not predicate({None: row})]
        self._rowcount = len(rows) - len(keep)
        rows[:] = keep

    def _handle_select(self, sql: str, params: Iterator[Any]) -> None:
        match = _SELECT_RE.match(sql)
        if not match:
            raise MockDatabaseError(f"Unsupported SELECT: {sql[:60]}")

        base_alias = (match["alias"] or match["table"]).lower()
        contexts = [{base_alias: row} for row in self._table(match["table"])]

        for join in _JOIN_RE.finditer(match["joins"] or ""):
            alias = (join["alias"] or join["table"]).lower()
            right_rows = self._table(join["table"])
            joined = []
            for ctx in contexts:
                matches = [
                    row for row in right_rows
                    if self._safe_compare(
                        _COMPARATORS["="],
                        self._lookup({**ctx, alias: row}, join["left"]),
                        self._lookup({**ctx, alias: row}, join["right"]),
                    )
                ]
                if matches:
                    joined.extend({**ctx, alias: row} for row in matches)
                elif (join["kind"] or "").strip().upper() == "LEFT":
                    joined.append({**ctx, alias: {}})
            contexts = joined

        predicate = self._compile_where(match["where"], params)
        contexts = [ctx for ctx in contexts if predicate(ctx)]

        if match["order"]:
            for term in reversed(_split_csv(match["order"])):
                parts = term.split()
                descending = len(parts) > 1 and parts[1].upper() == "DESC"
                contexts.sort(
                    key=lambda ctx: self._sort_key(self._lookup(ctx, parts[0])),
                    reverse=descending,
                )

        if match["limit"]:
            contexts = contexts[:int(_bind(match["limit"], params))]

        projections = []
        for item in _split_csv(match["columns"]):
            expression = re.split(r" AS ", item, flags=re.IGNORECASE)[0].strip()
            projections.append(expression)

        self._results = [
            tuple(
                _bind(expr, iter(())) if expr.isdigit() else self._lookup(ctx, expr)
                for expr in projections
            )
            for ctx in contexts
        ]
        self._rowcount = len(self._results)

    # -- helpers ---------------------------------------------------------------

    def _table(self, name: str) -> list[dict]:
        return self._storage.setdefault(name.lower(), [])

    @staticmethod
    def _lookup(ctx: dict, name: str) -> Any:
        if "." in name:
            alias, column = name.lower().split(".", 1)
            return (ctx.get(alias) or {}).get(column)
        column = name.lower()
        for row in ctx.values():
            if row and column in row:
                return row[column]
        return None

    @staticmethod
    def _sort_key(value: Any) -> tuple:
        # NULLs first, then natural ordering
        return (value is not None, value if value is not None else 0)

    def _compile_where(self, where: Optional[str], params: Iterator[Any]):
        """Bind parameters once and return a row-context predicate."""
        if not where:
            return lambda ctx: True

        conditions = []
        for raw in re.split(r" AND ", where, flags=re.IGNORECASE):
            raw = raw.strip()

            null_match = _IS_NULL_RE.match(raw)
            if null_match:
                negate = bool(null_match["negate"])
                column = null_match["column"]
                conditions.append(
                    lambda ctx, c=column, n=negate: (self._lookup(ctx, c) is None) != n
                )
                continue

            in_match = _IN_RE.match(raw)
            if in_match:
                column = in_match["column"]
                options = [_bind(item, params) for item in _split_csv(in_match["items"])]
                conditions.append(
                    lambda ctx, c=column, o=options: self._lookup(ctx, c) in o
                )
                continue

            compare = _COMPARE_RE.match(raw)
            if not compare:
                raise MockDatabaseError(f"Unsupported condition: {raw}")

            column, operator = compare["column"], compare["op"]
            operand = compare["operand"].strip()
            if re.fullmatch(r"[A-Za-z_]\w*\.\w+", operand):
                # column-to-column comparison
                conditions.append(
                    lambda ctx, c=column, o=operand, f=_COMPARATORS[operator]:
                        self._safe_compare(f, self._lookup(ctx, c), self._lookup(ctx, o))
                )
            else:
                value = _bind(operand, params)
                conditions.append(
                    lambda ctx, c=column, v=value, f=_COMPARATORS[operator]:
                        self._safe_compare(f, self._lookup(ctx, c), v)
                )

        return lambda ctx: all(condition(ctx) for condition in conditions)

    @staticmethod
    def _safe_compare(comparator, left: Any, right: Any) -> bool:
        # SQL semantics: any comparison with NULL is not true
        if left is None or right is None:
            return False
        return comparator(left, right)

    def fetchone(self):
        """Fetch one row from results."""
        if not self._results:
            return None
        return self._results[0]

    def fetchall(self) -> list:
        """Fetch all rows from results."""
        return list(self._results)

    def close(self) -> None:
        """Close cursor (no-op for mock)."""
        pass

    @property
    def rowcount(self) -> int:
        """Return number of rows affected."""
        return self._rowcount


class MockSnowflakeConnection:
    """
    Mock Snowflake connection for local development.

    Stores data in memory as {table_name: [row_dict, ...]}.
    This enables running the dispatcher and the API without a real database.

    Not suitable for production, but perfect for:
    - Local development
    - Unit tests
    - CI/CD environments
    """

    def __init__(self) -> None:
        self._storage: dict[str, list[dict]] = {
            'scheduled_messages': [],
            'patients': [],
            'users': [],
            'coaches': [],
            'conversations': [],
        }
        self._failures: list[tuple[str, Exception]] = []
        self.commits = 0

        logger.info("Initialized mock Snowflake connection (in-memory)")

    def cursor(self) -> MockSnowflakeCursor:
        """Create a mock cursor."""
        return MockSnowflakeCursor(self)

    def commit(self) -> None:
        """Commit transaction (no-op for mock, always auto-commits)."""
        self.commits += 1
        logger.debug("Mock connection commit")

    def rollback(self) -> None:
        """Rollback transaction (no-op for mock)."""
        logger.debug("Mock connection rollback")

    def close(self) -> None:
        """Close connection (no-op for mock)."""
        logger.debug("Mock connection close")

    # Helper methods for testing
    def fail_next(self, sql_fragment: str, error: Optional[Exception] = None) -> None:
        """Make the next statement containing `sql_fragment` raise."""
        self._failures.append(
            (sql_fragment.upper(), error or MockDatabaseError("injected failure"))
        )

    def _check_failure(self, sql: str) -> None:
        upper = sql.upper()
        for index, (fragment, error) in enumerate(self._failures):
            if fragment in upper:
                del self._failures[index]
                raise error

    def _add_row(self, table: str, row: dict) -> None:
        """Add a row to mock storage (for test setup)."""
        self._storage.setdefault(table, []).append(
            {key.lower(): value for key, value in row.items()}
        )

    def _rows(self, table: str) -> list[dict]:
        """Get rows from mock storage (for test assertions)."""
        return self._storage.get(table, [])


@contextmanager
def get_mock_snowflake_connection() -> Generator[MockSnowflakeConnection, None, None]:
    """
    Provide mock Snowflake connection for local development.

    Returns a connection that stores data in memory.
    """
    conn = MockSnowflakeConnection()
    try:
        yield conn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

@contextmanager
def create_snowflake_connection(
    config: Optional[SnowflakeConfig] = None,
    mock_mode: bool = False,
) -> Generator[SnowflakeConnection, None, None]:
    """
    Create Snowflake connection based on configuration.

    Factory function that returns either a real or mock connection
    depending on mock_mode flag.

    Args:
        config: Snowflake configuration (required if not mock_mode)
        mock_mode: If True, return mock connection for testing

    Yields:
        SnowflakeConnection implementation (real or mock)
    """
    if mock_mode:
        with get_mock_snowflake_connection() as conn:
            yield conn
    else:
        if config is None:
            raise ValueError("config is required when not in mock mode")

        with get_snowflake_connection(config) as conn:
            yield conn
