"""Protocol classification of transactions by their OP_RETURN data."""

from __future__ import annotations

import os
import re
from typing import List, Mapping, Optional, Sequence, Tuple

from .wire import Tx, extract_op_return

__all__ = ["TransactionClassifier", "parse_protocols", "default_protocols"]

Protocol = Tuple[str, "re.Pattern[str]"]

_DEFAULTS = (
    ("RUN", r"run://"),
    ("MAP", r"1PuQa7"),
    ("B", r"19HxigV4QyBv3tHpQVcUEQyq1pzZVdoAut"),
    ("BCAT", r"15PciHG22SNLQJXMoSUaWVi7WSqc7hCfva"),
    ("AIP", r"1J7Gm3UGv5R3vRjAf9nV7oJ3yF3nD4r93r"),
    ("METANET", r"1Meta"),
    ("D", r"19iG3WTYSsbyos3uJ733yK4zEioi1FesNU"),
    ("TOKENIZED", r"TKN"),
)

STANDARD = "STANDARD"


def parse_protocols(spec: str) -> List[Protocol]:
    """Parse ``name:pattern;name:pattern``, skipping malformed entries."""
    protocols = []
    for entry in spec.split(";"):
        parts = entry.split(":")
        if len(parts) != 2:
            continue
        name, pattern = parts
        try:
            protocols.append((name, re.compile(pattern)))
        except re.error:
            continue
    return protocols


def default_protocols() -> List[Protocol]:
    """The built-in protocol patterns, in matching order."""
    return [(name, re.compile(pattern)) for name, pattern in _DEFAULTS]


class TransactionClassifier:
    """Names the protocol of a transaction from its OP_RETURN output."""

    def __init__(
        self,
        protocols: Optional[Sequence[Protocol]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        if protocols is None:
            env = os.environ if environ is None else environ
            protocols = parse_protocols(env.get("PROTOCOLS", ""))
        self.protocols: List[Protocol] = list(protocols) or default_protocols()

    def classify(self, tx: Tx) -> str:
        """Return the first matching protocol name, or "STANDARD"."""
        op_return = extract_op_return(tx)
        if op_return is None:
            return STANDARD
        text = bytes.fromhex(op_return).decode("utf-8", errors="replace")
        for name, pattern in self.protocols:
            if pattern.search(text):
                return name
        return STANDARD