"""Container and network selectors.

Policy files select containers with short expressions:

    *                       everything (same as leaving the field out)
    Name == web             exact container name
    Name =~ ^web-\\d+$      regular expression on the name (re.search)
    Label tier == web       exact label value
    Label tier =~ ^(web|api)$
    Network == backend      containers attached to that network

Network fields (``network``, ``dst_network``...) accept ``*`` and the
``Name`` forms, evaluated against network names.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from dpfw.errors import ParseError

EXPR_RE = re.compile(r"^(?P<kind>Name|Label|Network)\s+(?:(?P<key>\S+)\s+)?(?P<op>==|=~)\s*(?P<value>.+?)\s*$")


@dataclass(frozen=True)
class Wildcard:
    def __str__(self):
        return "*"


@dataclass(frozen=True)
class ByName:
    value: str
    regex: Optional[re.Pattern] = None

    def __str__(self):
        return f"Name =~ {self.value}" if self.regex else f"Name == {self.value}"


@dataclass(frozen=True)
class ByLabel:
    key: str
    value: str
    regex: Optional[re.Pattern] = None

    def __str__(self):
        op = "=~" if self.regex else "=="
        return f"Label {self.key} {op} {self.value}"


@dataclass(frozen=True)
class ByNetwork:
    network: str

    def __str__(self):
        return f"Network == {self.network}"


Selector = Union[Wildcard, ByName, ByLabel, ByNetwork]

WILDCARD = Wildcard()


def _compile(value: str, expr: str) -> re.Pattern:
    try:
        return re.compile(value)
    except re.error as e:
        raise ParseError(f"Invalid regular expression in selector '{expr}': {e}") from e


def parse_selector(expr: Optional[str]) -> Selector:
    if expr is None:
        return WILDCARD
    if not isinstance(expr, str):
        raise ParseError(f"Selector must be a string, got {expr!r}")
    expr = expr.strip()
    if expr in ("", "*"):
        return WILDCARD

    m = EXPR_RE.match(expr)
    if not m:
        raise ParseError(f"Cannot parse selector '{expr}'")
    kind, key, op, value = m.group("kind", "key", "op", "value")

    if kind == "Label":
        if not key:
            raise ParseError(f"Label selector needs a label name: '{expr}'")
        return ByLabel(key, value, _compile(value, expr) if op == "=~" else None)
    if key:
        raise ParseError(f"Unexpected token '{key}' in selector '{expr}'")
    if kind == "Network":
        if op != "==":
            raise ParseError(f"Network selector only supports '==': '{expr}'")
        return ByNetwork(value)
    return ByName(value, _compile(value, expr) if op == "=~" else None)


def parse_network_selector(expr: Optional[str]) -> Selector:
    selector = parse_selector(expr)
    if not isinstance(selector, (Wildcard, ByName)):
        raise ParseError(f"Network fields only accept '*' or Name selectors: '{expr}'")
    return selector


def _match_text(value: str, expected: str, regex: Optional[re.Pattern]) -> bool:
    if regex is not None:
        return regex.search(value) is not None
    return value == expected


def matches(selector: Selector, container) -> bool:
    """Evaluate a selector against a snapshot Container."""
    if isinstance(selector, Wildcard):
        return True
    if isinstance(selector, ByName):
        return _match_text(container.name, selector.value, selector.regex)
    if isinstance(selector, ByLabel):
        if selector.key not in container.labels:
            return False
        return _match_text(container.labels[selector.key], selector.value, selector.regex)
    if isinstance(selector, ByNetwork):
        return selector.network in container.networks
    raise TypeError(f"Unknown selector {selector!r}")


def matches_network(selector: Selector, network) -> bool:
    if isinstance(selector, Wildcard):
        return True
    if isinstance(selector, ByName):
        return _match_text(network.name, selector.value, selector.regex)
    return False


def select(selector: Selector, containers: Iterable) -> List:
    return [c for c in containers if matches(selector, c)]
