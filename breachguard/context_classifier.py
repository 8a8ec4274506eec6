"""
Output context classification for XSS analysis.

Looks at the text preceding an output site and decides whether the value
lands in a script block, a style block, a URL, a tag attribute or plain
markup.  Each context has its own required escaping functions and base
severity, both read from ``contexts.yml``.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from . import arg_parser
from .models import Severity
from .rule_engine import RuleSet


class OutputContext(Enum):
    HTML_CONTENT = "html_content"
    ATTRIBUTE = "attribute"
    JAVASCRIPT = "javascript"
    CSS = "css"
    URL = "url"


# PHP glue between the markup and the value: `<?php echo `, `<?= `, `' . `
_TRAILING_NOISE = (
    re.compile(r"""['"]\s*\.\s*$"""),
    re.compile(r"<\?(?:php|=)?\s*(?:(?:echo|print)\b\s*)?\(?\s*$", re.IGNORECASE),
    re.compile(r"\b(?:echo|print)\s*\(?\s*$", re.IGNORECASE),
)

_DEFAULT_SEVERITY = {
    OutputContext.JAVASCRIPT: Severity.CRITICAL,
    OutputContext.CSS: Severity.MEDIUM,
    OutputContext.URL: Severity.HIGH,
    OutputContext.ATTRIBUTE: Severity.HIGH,
    OutputContext.HTML_CONTENT: Severity.HIGH,
}


@dataclass(frozen=True)
class ContextVerdict:
    context: OutputContext
    severity: Severity
    required_escaping: Tuple[str, ...]
    escaping_used: Optional[str] = None

    @property
    def escaped(self) -> bool:
        return self.escaping_used is not None

    @property
    def correctly_escaped(self) -> bool:
        return self.escaping_used is not None and self.escaping_used in self.required_escaping


def _strip_noise(text: str) -> str:
    changed = True
    while changed:
        changed = False
        for regex in _TRAILING_NOISE:
            stripped = regex.sub("", text)
            if stripped != text:
                text = stripped
                changed = True
    return text


class ContextClassifier:
    def __init__(self, ruleset: RuleSet, window: int = 200):
        self.ruleset = ruleset
        self.window = window

    def preceding_text(self, content: str, offset: int) -> str:
        return _strip_noise(content[max(offset - self.window, 0):offset])

    def classify(self, content: str, offset: int) -> OutputContext:
        """Context of an output site starting at *offset*."""
        text = self.preceding_text(content, offset)
        for ctx in self.ruleset.contexts:
            if any(m.search(text) for m in ctx.compiled_markers):
                try:
                    return OutputContext(ctx.name)
                except ValueError:
                    continue
        return OutputContext.HTML_CONTENT

    def required_escaping(self, context: OutputContext) -> Tuple[str, ...]:
        ctx = self.ruleset.context(context.value)
        return ctx.escaping if ctx else ()

    def severity_for(self, context: OutputContext) -> Severity:
        ctx = self.ruleset.context(context.value)
        return ctx.severity if ctx else _DEFAULT_SEVERITY[context]

    def escaping_in(self, expression: str) -> Optional[str]:
        """Outermost XSS escaping call (or cast) applied in *expression*."""
        names = [n for n in self.ruleset.sanitizer_names("xss") if not n.startswith("(")]
        first = next(arg_parser.find_calls(expression, names), None)
        if first is not None:
            return first.name
        for name in self.ruleset.sanitizer_names("xss"):
            if name.startswith("(") and arg_parser.normalize_expression(expression).startswith(
                    arg_parser.normalize_expression(name)):
                return name
        return None

    def evaluate(self, content: str, offset: int, expression: str = "") -> ContextVerdict:
        context = self.classify(content, offset)
        return ContextVerdict(
            context=context,
            severity=self.severity_for(context),
            required_escaping=self.required_escaping(context),
            escaping_used=self.escaping_in(expression) if expression else None,
        )
