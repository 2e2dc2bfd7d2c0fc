"""Parameterised SQL rendering and dialect translation.

Templates are written in SQL Server flavoured SQL with ``@name`` placeholders.
``render`` substitutes parameters, ``translate`` transpiles the result for the
target engine with sqlglot. Both are pure string functions.

A translated script starts with a ``-- dialect: <name>`` line. ``translate``
reads a marked script in the dialect it names, so translating a script a
second time for the same dialect returns it unchanged.
"""

import functools
import re
from importlib import resources
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError
from sqlglot.tokens import Token, TokenType

from achilles.errors import ConfigurationError, TemplateError, UnboundParameterError
from achilles.utils import quote_literal

SQL_SERVER = "sql server"
POSTGRESQL = "postgresql"
SQLITE = "sqlite"
SPARK = "spark"

DIALECTS = (SQL_SERVER, POSTGRESQL, SQLITE, SPARK)

_ALIASES = {
    "sql server": SQL_SERVER,
    "sqlserver": SQL_SERVER,
    "mssql": SQL_SERVER,
    "postgresql": POSTGRESQL,
    "postgres": POSTGRESQL,
    "sqlite": SQLITE,
    "spark": SPARK,
    "databricks": SPARK,
}

# sqlglot dialect names
_SQLGLOT = {
    SQL_SERVER: "tsql",
    POSTGRESQL: "postgres",
    SQLITE: "sqlite",
    SPARK: "spark",
}


def normalize_dialect(dialect: str) -> str:
    """Map a dialect name or alias to its canonical identifier."""
    try:
        return _ALIASES[str(dialect).strip().lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported dialect {dialect!r}; expected one of {', '.join(DIALECTS)}"
        ) from None


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_PLACEHOLDER = re.compile(r"(?<!@)@([A-Za-z_][A-Za-z0-9_]*)")


def _format_item(value) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return quote_literal(value)


def _format_value(value) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (set, frozenset)):
        value = sorted(value)
    if isinstance(value, (list, tuple)):
        return ", ".join(_format_item(v) for v in value)
    return str(value)


def render(template: str, **params) -> str:
    """Substitute ``@name`` placeholders in *template*.

    Substitution is a single pass (values are never re-scanned) and the
    longest bound name wins, so ``@cdmVersion`` is not mistaken for ``@cdm``.
    A name ends at the first character that is not a letter or digit, which
    lets templates write ``@prefix_@analysisId``. Placeholders left unbound
    raise ``UnboundParameterError``.
    """
    leftover = template
    sql = template
    if params:
        names = sorted(params, key=len, reverse=True)
        pattern = re.compile(
            "(?<!@)@(" + "|".join(re.escape(n) for n in names) + ")(?![A-Za-z0-9])"
        )
        values = {name: _format_value(v) for name, v in params.items()}
        sql = pattern.sub(lambda m: values[m.group(1)], template)
        leftover = pattern.sub("", template)

    unbound = {m.group(1).rstrip("_") or m.group(1) for m in _PLACEHOLDER.finditer(leftover)}
    if unbound:
        raise UnboundParameterError(unbound)
    return sql


def render_union(template: str, items: Iterable[Dict], **params) -> str:
    """Render *template* once per item and join the copies with ``UNION ALL``."""
    parts = [render(template, **{**params, **item}) for item in items]
    return "\nUNION ALL\n".join(parts)


# ---------------------------------------------------------------------------
# Statement splitting
# ---------------------------------------------------------------------------

_DIALECT_HEADER = re.compile(r"\A\s*--\s*dialect:\s*([^\n]+?)\s*$", re.M)


def script_dialect(sql: str) -> str:
    """Return the dialect *sql* is marked with; unmarked SQL is SQL Server SQL."""
    m = _DIALECT_HEADER.match(sql)
    return normalize_dialect(m.group(1)) if m else SQL_SERVER


def _tokenize(sql: str, dialect: str) -> List[Token]:
    try:
        return sqlglot.tokenize(sql, read=_SQLGLOT[dialect])
    except TokenError as exc:
        raise TemplateError(f"Cannot tokenize SQL: {exc}") from exc


def _token_groups(sql: str, dialect: str) -> List[List[Token]]:
    groups: List[List[Token]] = [[]]
    for token in _tokenize(sql, dialect):
        if token.token_type == TokenType.SEMICOLON:
            groups.append([])
        else:
            groups[-1].append(token)
    return [g for g in groups if g]


def _strip_temp_markers(sql: str, tokens: List[Token]) -> Tuple[str, Set[str]]:
    """Drop the ``#`` of temp table names; return the text and the bare names."""
    offset = tokens[0].start
    text = sql[offset:tokens[-1].end + 1]
    drop: List[int] = []
    temps: Set[str] = set()
    for i, token in enumerate(tokens):
        if sql[token.start] != "#":
            continue
        if token.end > token.start:
            temps.add(sql[token.start + 1:token.end + 1].lower())
        elif i + 1 < len(tokens) and tokens[i + 1].start == token.end + 1:
            temps.add(tokens[i + 1].text.lower())
        else:
            continue
        drop.append(token.start - offset)
    for pos in reversed(drop):
        text = text[:pos] + text[pos + 1:]
    return text, temps


def split_statements(sql: str) -> List[str]:
    """Split a script on ``;`` outside string literals.

    Comments before a statement and empty statements are dropped; each
    statement keeps its original text.
    """
    dialect = script_dialect(sql)
    return [sql[g[0].start:g[-1].end + 1] for g in _token_groups(sql, dialect)]


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------

_STRING_TYPES = {
    exp.DataType.Type.CHAR,
    exp.DataType.Type.NCHAR,
    exp.DataType.Type.VARCHAR,
    exp.DataType.Type.NVARCHAR,
    exp.DataType.Type.TEXT,
}


def _date_arg(node: exp.Expression) -> exp.Expression:
    # tsql wraps date function arguments in conversions the targets spell differently
    while isinstance(node, (exp.TsOrDsToDate, exp.TimeStrToTime)):
        node = node.this
    return node


def _sqlite_int(node: exp.Expression) -> exp.Cast:
    return exp.Cast(this=node, to=exp.DataType.build("INT"))


def _normalize_function(node: exp.Expression) -> exp.Expression:
    """Turn SQL Server functions sqlglot left unparsed into typed expressions."""
    if not isinstance(node, exp.Anonymous):
        return node
    name = node.name.upper()
    args = node.expressions
    if name == "COUNT_BIG":
        return exp.Count(this=args[0] if args else exp.Star())
    if name == "ISNULL" and len(args) == 2:
        return exp.Coalesce(this=args[0], expressions=[args[1]])
    if name == "LEN" and len(args) == 1:
        return exp.Length(this=args[0])
    if name == "STDEV" and len(args) == 1:
        return exp.Stddev(this=args[0])
    if name == "YEAR" and len(args) == 1:
        return exp.Year(this=args[0])
    return node


def _rewrite_node(node: exp.Expression, dialect: str) -> exp.Expression:
    node = _normalize_function(node)

    if isinstance(node, exp.Count) and node.args.get("big"):
        node.set("big", None)

    elif isinstance(node, (exp.Stddev, exp.StddevSamp)) and dialect == SQLITE:
        # registered on every sqlite connection
        return exp.Anonymous(this="STDEV", expressions=[node.this])

    elif isinstance(node, exp.Year) and dialect == SQLITE:
        year = exp.Anonymous(
            this="STRFTIME", expressions=[exp.Literal.string("%Y"), _date_arg(node.this)]
        )
        return _sqlite_int(year)

    elif isinstance(node, exp.Year) and dialect == POSTGRESQL:
        return exp.Extract(this=exp.var("YEAR"), expression=_date_arg(node.this))

    elif isinstance(node, exp.DateDiff) and dialect == SQLITE:
        days = exp.Sub(
            this=exp.Anonymous(this="JULIANDAY", expressions=[_date_arg(node.this)]),
            expression=exp.Anonymous(this="JULIANDAY", expressions=[_date_arg(node.expression)]),
        )
        return _sqlite_int(days)

    elif isinstance(node, exp.Concat) and dialect == SQLITE:
        piped = functools.reduce(
            lambda left, right: exp.DPipe(this=left, expression=right), node.expressions
        )
        return exp.Paren(this=piped)

    elif isinstance(node, exp.DataType):
        if node.this == exp.DataType.Type.FLOAT:
            # SQL Server FLOAT is eight bytes
            return exp.DataType(this=exp.DataType.Type.DOUBLE)
        if dialect == SPARK and node.this in _STRING_TYPES:
            return exp.DataType(this=exp.DataType.Type.TEXT)

    return node


def _rewrite_statement(tree: exp.Expression, temps: Set[str], dialect: str) -> exp.Expression:
    """SELECT INTO becomes CTAS; temp tables become Spark cached views."""
    if isinstance(tree, (exp.Select, exp.Union)):
        into = tree.find(exp.Into)
        if into is None:
            return tree
        target = into.this
        into.pop()
        if target.name.lower() not in temps:
            return exp.Create(this=target, kind="TABLE", expression=tree)
        if dialect == SPARK:
            return exp.Cache(this=target, expression=tree)
        return exp.Create(
            this=target,
            kind="TABLE",
            expression=tree,
            properties=exp.Properties(expressions=[exp.TemporaryProperty()]),
        )

    if isinstance(tree, exp.Drop) and dialect == SPARK:
        if tree.this is not None and tree.this.name.lower() in temps:
            tree.set("kind", "VIEW")
            tree.set("exists", True)

    elif isinstance(tree, exp.TruncateTable) and dialect == SQLITE:
        return exp.Delete(this=tree.expressions[0])

    return tree


def _transpile(text: str, temps: Set[str], source: str, dialect: str) -> str:
    try:
        tree = sqlglot.parse_one(text, read=_SQLGLOT[source])
    except ParseError as exc:
        raise TemplateError(f"Cannot translate statement for {dialect}: {exc}") from exc
    if source == SQL_SERVER:
        tree = _rewrite_statement(tree, temps, dialect)
    for node in list(tree.find_all(exp.Expression)):
        new = _rewrite_node(node, dialect)
        if new is not node:
            node.replace(new)
    return tree.sql(dialect=_SQLGLOT[dialect], comments=False)


def translate(sql: str, dialect: str) -> str:
    """Translate *sql* for *dialect*.

    Unmarked input is read as SQL Server SQL. The output is marked with
    its dialect and holds one ``stmt;`` per line, so
    ``translate(translate(sql, d), d) == translate(sql, d)``.
    """
    dialect = normalize_dialect(dialect)
    source = script_dialect(sql)
    statements = []
    for tokens in _token_groups(sql, source):
        if source == dialect:
            statements.append(sql[tokens[0].start:tokens[-1].end + 1])
            continue
        if source == SQL_SERVER:
            text, temps = _strip_temp_markers(sql, tokens)
        else:
            text, temps = sql[tokens[0].start:tokens[-1].end + 1], set()
        statements.append(_transpile(text, temps, source, dialect))
    body = "".join(f"{s};\n" for s in statements)
    return f"-- dialect: {dialect}\n{body}"


# ---------------------------------------------------------------------------
# Template store
# ---------------------------------------------------------------------------


class TemplateStore:
    """Loads SQL templates by relative name from the package or a custom root."""

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root) if root is not None else None
        self._cache: Dict[str, str] = {}

    def load(self, name: str) -> str:
        if name not in self._cache:
            try:
                if self.root is not None:
                    text = (self.root / name).read_text(encoding="utf-8")
                else:
                    text = resources.files("achilles").joinpath("sql", name).read_text(
                        encoding="utf-8"
                    )
            except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
                raise TemplateError(f"SQL template not found: {name}", template=name) from exc
            self._cache[name] = text
        return self._cache[name]

    def exists(self, name: str) -> bool:
        try:
            self.load(name)
        except TemplateError:
            return False
        return True

    def render(self, name: str, **params) -> str:
        try:
            return render(self.load(name), **params)
        except UnboundParameterError as exc:
            raise UnboundParameterError(exc.names, template=name) from None

    def render_translate(self, name: str, dialect: str, **params) -> str:
        return translate(self.render(name, **params), dialect)
