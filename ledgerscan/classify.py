"""
Explorer response classification.

Explorers report failures as free text (``message`` and, for ``status="0"``
responses, a string ``result``). The classifier maps that text onto an
ErrorKind with an ordered list of (predicate, kind) rules. First match wins;
anything unmatched is a plain remote error.

Usage:
    classifier = ErrorClassifier.default()
    classifier.extend(ErrorKind.RATE_LIMITED, ["slow down"])
    kind = classifier.classify("NOTOK Max rate limit reached")
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable


class ErrorKind(str, Enum):
    EMPTY = "empty"
    CONFIGURATION = "configuration"
    RATE_LIMITED = "rate_limited"
    REMOTE = "remote"


EMPTY_PHRASES = ("no transactions found", "no records found", "no data found")

CONFIGURATION_PHRASES = (
    "invalid api key",
    "missing/invalid api key",
    "api key not",
    "#err2",
    "unauthorized",
)

RATE_LIMIT_PHRASES = (
    "rate limit",
    "max calls",
    "too many requests",
    "throttl",
    "per sec",
    "http 429",
)


@dataclass(frozen=True)
class Rule:
    """A single classification rule."""

    predicate: Callable[[str], bool]
    kind: ErrorKind
    name: str = ""


def contains_any(phrases: Iterable[str]) -> Callable[[str], bool]:
    """Case-insensitive substring predicate over a fixed phrase set."""
    lowered = tuple(p.lower() for p in phrases)

    def _match(text: str) -> bool:
        text = text.lower()
        return any(p in text for p in lowered)

    return _match


class ErrorClassifier:
    """Ordered predicate → ErrorKind rules."""

    def __init__(self, rules: list[Rule] | None = None) -> None:
        self._rules: list[Rule] = list(rules or [])

    @classmethod
    def default(cls, extra_rate_limit_phrases: Iterable[str] = ()) -> ErrorClassifier:
        # Credential rules precede throttling: a bad key also comes back as "NOTOK".
        classifier = cls(
            [
                Rule(contains_any(EMPTY_PHRASES), ErrorKind.EMPTY, "empty"),
                Rule(contains_any(CONFIGURATION_PHRASES), ErrorKind.CONFIGURATION, "credential"),
                Rule(contains_any(RATE_LIMIT_PHRASES), ErrorKind.RATE_LIMITED, "throttle"),
            ]
        )
        extra = list(extra_rate_limit_phrases)
        if extra:
            classifier.extend(ErrorKind.RATE_LIMITED, extra)
        return classifier

    @property
    def rules(self) -> list[Rule]:
        return list(self._rules)

    def extend(self, kind: ErrorKind, phrases: Iterable[str], name: str = "custom") -> None:
        """
        Add a phrase rule for `kind`.

        The new rule is placed directly after the last existing rule of the
        same kind, so custom throttling phrases never shadow the credential
        rules that precede them.
        """
        rule = Rule(contains_any(phrases), kind, name)
        position = len(self._rules)
        for i, existing in enumerate(self._rules):
            if existing.kind == kind:
                position = i + 1
        self._rules.insert(position, rule)

    def classify(self, message: str) -> ErrorKind:
        """Return the ErrorKind for a remote failure message."""
        text = message or ""
        for rule in self._rules:
            if rule.predicate(text):
                return rule.kind
        return ErrorKind.REMOTE

    def classify_response(self, data: dict[str, Any]) -> ErrorKind:
        """Classify a ``status="0"`` explorer payload using message and result text."""
        return self.classify(failure_text(data))


def failure_text(data: dict[str, Any]) -> str:
    """Flatten the human-readable parts of a failed explorer/RPC payload."""
    parts: list[str] = []
    message = data.get("message")
    if isinstance(message, str):
        parts.append(message)
    result = data.get("result")
    if isinstance(result, str):
        parts.append(result)
    error = data.get("error")
    if isinstance(error, dict):
        parts.append(str(error.get("message", "")))
        parts.append(str(error.get("code", "")))
    elif isinstance(error, str):
        parts.append(error)
    return " ".join(p for p in parts if p)
