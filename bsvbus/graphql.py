"""A small GraphQL query executor for transactions and blocks."""

from __future__ import annotations

import html
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .database import get_block, get_transaction, list_transactions
from .models import BlockHeader, IndexedTx

__all__ = ["GraphQLError", "Field", "parse_query", "QueryRoot", "playground_html"]

_I32 = (-(2**31), 2**31 - 1)
_I64 = (-(2**63), 2**63 - 1)

_LEXEME_RE = re.compile(
    r'(?P<skip>\s+|,|#[^\n]*)'
    r'|(?P<punct>\.\.\.|[{}()\[\]:$!=@])'
    r'|(?P<string>"(?:[^"\\\n]|\\.)*")'
    r'|(?P<number>-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)'
    r'|(?P<name>[_A-Za-z][_0-9A-Za-z]*)'
)

_TX_FIELDS = {
    "txid": "txid",
    "blockHeight": "block_height",
    "txType": "tx_type",
    "opReturn": "op_return",
    "txHex": "tx_hex",
}
_BLOCK_FIELDS = {"blockHash": "block_hash", "height": "height", "prevHash": "prev_hash"}


class GraphQLError(ValueError):
    """Raised for queries that cannot be parsed or resolved."""


@dataclass(frozen=True)
class Field:
    """One selected field with its arguments and sub-selections."""

    name: str
    alias: Optional[str] = None
    arguments: Dict[str, Any] = field(default_factory=dict)
    selections: Tuple["Field", ...] = ()

    @property
    def response_key(self) -> str:
        return self.alias or self.name


def _lex(text: str) -> List[Tuple[str, Any]]:
    lexemes = []
    pos = 0
    while pos < len(text):
        match = _LEXEME_RE.match(text, pos)
        if match is None:
            raise GraphQLError(f"unexpected character {text[pos]!r} at {pos}")
        pos = match.end()
        kind = match.lastgroup
        value = match.group()
        if kind == "skip":
            continue
        if kind == "string":
            value = json.loads(value)
        elif kind == "number":
            value = float(value) if any(c in value for c in ".eE") else int(value)
        lexemes.append((kind, value))
    return lexemes


class _Parser:
    def __init__(self, text: str, variables: Mapping[str, Any]) -> None:
        self.lexemes = _lex(text)
        self.pos = 0
        self.variables = dict(variables)

    def peek(self) -> Tuple[Optional[str], Any]:
        return self.lexemes[self.pos] if self.pos < len(self.lexemes) else (None, None)

    def take(self) -> Tuple[str, Any]:
        if self.pos >= len(self.lexemes):
            raise GraphQLError("unexpected end of query")
        lexeme = self.lexemes[self.pos]
        self.pos += 1
        return lexeme

    def expect(self, value: str) -> None:
        kind, got = self.take()
        if kind != "punct" or got != value:
            raise GraphQLError(f"expected {value!r}, got {got!r}")

    def at(self, value: str) -> bool:
        kind, got = self.peek()
        return kind == "punct" and got == value

    def name(self) -> str:
        kind, value = self.take()
        if kind != "name":
            raise GraphQLError(f"expected a name, got {value!r}")
        return value

    def document(self) -> List[Field]:
        kind, value = self.peek()
        if kind == "name":
            if value != "query":
                raise GraphQLError(f"unsupported operation: {value}")
            self.take()
            if self.peek()[0] == "name":
                self.take()
            if self.at("("):
                self.variable_definitions()
        fields = self.selection_set()
        if self.pos != len(self.lexemes):
            raise GraphQLError("unexpected content after query")
        return fields

    def variable_definitions(self) -> None:
        self.expect("(")
        while not self.at(")"):
            self.expect("$")
            var = self.name()
            self.expect(":")
            self.skip_type()
            if self.at("="):
                self.take()
                default = self.value()
                self.variables.setdefault(var, default)
        self.expect(")")

    def skip_type(self) -> None:
        if self.at("["):
            self.take()
            self.skip_type()
            self.expect("]")
        else:
            self.name()
        if self.at("!"):
            self.take()

    def selection_set(self) -> List[Field]:
        self.expect("{")
        fields = []
        while not self.at("}"):
            fields.append(self.field())
        self.expect("}")
        if not fields:
            raise GraphQLError("empty selection set")
        return fields

    def field(self) -> Field:
        name = self.name()
        alias = None
        if self.at(":"):
            self.take()
            alias, name = name, self.name()
        arguments: Dict[str, Any] = {}
        if self.at("("):
            self.take()
            while not self.at(")"):
                arg = self.name()
                self.expect(":")
                arguments[arg] = self.value()
            self.expect(")")
        selections: Tuple[Field, ...] = ()
        if self.at("{"):
            selections = tuple(self.selection_set())
        return Field(name, alias, arguments, selections)

    def value(self) -> Any:
        kind, value = self.take()
        if kind == "punct" and value == "$":
            return self.variables.get(self.name())
        if kind == "punct" and value == "[":
            items = []
            while not self.at("]"):
                items.append(self.value())
            self.expect("]")
            return items
        if kind == "name":
            return {"true": True, "false": False, "null": None}.get(value, value)
        if kind in ("string", "number"):
            return value
        raise GraphQLError(f"unexpected input {value!r}")


def parse_query(text: str, variables: Optional[Mapping[str, Any]] = None) -> List[Field]:
    """Parse a query document into its top-level fields."""
    return _Parser(text, variables or {}).document()


def _int_arg(args: Mapping[str, Any], key: str, bounds: Tuple[int, int], required: bool) -> Optional[int]:
    value = args.get(key)
    if value is None:
        if required:
            raise GraphQLError(f"missing required argument `{key}`")
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not bounds[0] <= value <= bounds[1]:
        raise GraphQLError(f"invalid value for argument `{key}`")
    return value


def _str_arg(args: Mapping[str, Any], key: str, required: bool) -> Optional[str]:
    value = args.get(key)
    if value is None:
        if required:
            raise GraphQLError(f"missing required argument `{key}`")
        return None
    if not isinstance(value, str):
        raise GraphQLError(f"invalid value for argument `{key}`")
    return value


def _check_args(field_: Field, allowed: set) -> None:
    unknown = set(field_.arguments) - allowed
    if unknown:
        raise GraphQLError(f"unknown argument `{sorted(unknown)[0]}` on field `{field_.name}`")


def _project(obj: Any, field_: Field, names: Mapping[str, str]) -> Optional[dict]:
    if obj is None:
        return None
    if not field_.selections:
        raise GraphQLError(f"field `{field_.name}` must have a selection of subfields")
    result = {}
    for sub in field_.selections:
        if sub.name == "__typename":
            result[sub.response_key] = type(obj).__name__
            continue
        if sub.name not in names:
            raise GraphQLError(f"unknown field `{sub.name}`")
        if sub.selections:
            raise GraphQLError(f"field `{sub.name}` has no subfields")
        result[sub.response_key] = getattr(obj, names[sub.name])
    return result


class QueryRoot:
    """Resolvers for the transaction, transactions and block queries."""

    def __init__(self, engine: Any) -> None:
        self.engine = engine

    def transaction(self, txid: str) -> Optional[IndexedTx]:
        with self.engine.connect() as conn:
            return get_transaction(conn, txid)

    def transactions(
        self,
        tx_type: Optional[str] = None,
        block_height: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[IndexedTx]:
        with self.engine.connect() as conn:
            return list_transactions(conn, tx_type, block_height, limit)

    def block(self, height: int) -> Optional[BlockHeader]:
        with self.engine.connect() as conn:
            return get_block(conn, height)

    def _resolve(self, field_: Field) -> Any:
        args = field_.arguments
        if field_.name == "transaction":
            _check_args(field_, {"txid"})
            return _project(self.transaction(_str_arg(args, "txid", True)), field_, _TX_FIELDS)
        if field_.name == "transactions":
            _check_args(field_, {"txType", "blockHeight", "limit"})
            txs = self.transactions(
                _str_arg(args, "txType", False),
                _int_arg(args, "blockHeight", _I64, False),
                _int_arg(args, "limit", _I32, False),
            )
            return [_project(tx, field_, _TX_FIELDS) for tx in txs]
        if field_.name == "block":
            _check_args(field_, {"height"})
            return _project(self.block(_int_arg(args, "height", _I64, True)), field_, _BLOCK_FIELDS)
        if field_.name == "__typename":
            return "QueryRoot"
        raise GraphQLError(f"unknown field `{field_.name}` on type `QueryRoot`")

    def execute(self, query: str, variables: Optional[Mapping[str, Any]] = None) -> dict:
        """Run ``query`` and return a GraphQL response object."""
        try:
            fields = parse_query(query, variables)
        except GraphQLError as exc:
            return {"data": None, "errors": [{"message": str(exc)}]}
        data: Dict[str, Any] = {}
        errors = []
        for field_ in fields:
            try:
                data[field_.response_key] = self._resolve(field_)
            except Exception as exc:
                data[field_.response_key] = None
                errors.append({"message": str(exc), "path": [field_.response_key]})
        response: Dict[str, Any] = {"data": data}
        if errors:
            response["errors"] = errors
        return response


def playground_html(endpoint: str = "/graphql") -> str:
    """A self-contained HTML page for sending queries to ``endpoint``."""
    target = json.dumps(endpoint)
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>GraphQL Playground</title></head>
<body>
<h1>GraphQL Playground</h1>
<p>Endpoint: <code>{html.escape(endpoint)}</code></p>
<textarea id="query" rows="12" cols="80">{{ transactions(limit: 10) {{ txid txType blockHeight }} }}</textarea>
<br><button id="run">Run</button>
<pre id="result"></pre>
<script>
document.getElementById("run").onclick = async function () {{
  const response = await fetch({target}, {{
    method: "POST",
    headers: {{"Content-Type": "application/json"}},
    body: JSON.stringify({{query: document.getElementById("query").value}})
  }});
  document.getElementById("result").textContent =
    JSON.stringify(await response.json(), null, 2);
}};
</script>
</body>
</html>
"""