"""HCL loading engine — render and parse documents into a resource graph."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .graph import Graph
    from .provider import ProviderRegistry
    from .workspace import Workspace

import hcl2
import jinja2
from lark.exceptions import LarkError

from .errors import ParseError, SourceLocation

logger = logging.getLogger(__name__)

_BLOCK_PATTERN = re.compile(
    r'^[ \t]*(resource|output|variable)[ \t]+"([^"]+)"(?:[ \t]+"([^"]+)")?[ \t]*\{',
    re.MULTILINE,
)


def scan(
    path: str | Path,
    *,
    recurse: bool = True,
    registry: ProviderRegistry | None = None,
    variables: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
) -> Workspace:
    """Scan a directory for .hcl files and return a ready Workspace."""
    from .workspace import Workspace

    ws = Workspace(registry=registry, variables=variables, context=context, base_dir=path)
    ws.scan(path, recurse=recurse)
    return ws


def render(
    text: str,
    *,
    context: dict[str, Any] | None = None,
    source: str = "<string>",
) -> str:
    """Render a document as a Jinja2 template."""
    ctx = context if context is not None else {}
    env = jinja2.Environment(
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    try:
        template = env.from_string(text)
        return template.render(ctx)
    except jinja2.TemplateSyntaxError as exc:
        raise ParseError(exc.message or str(exc), SourceLocation(source, exc.lineno)) from exc
    except jinja2.TemplateError as exc:
        raise ParseError(str(exc), SourceLocation(source)) from exc


def loads(text: str, *, source: str = "<string>") -> dict[str, Any]:
    """Parse HCL text into a dict, reporting syntax errors with their location."""
    try:
        return hcl2.loads(text)
    except LarkError as exc:
        line = getattr(exc, "line", None)
        column = getattr(exc, "column", None)
        if line is not None and line < 0:
            line = column = None
        message = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__
        raise ParseError(f"Syntax error: {message}", SourceLocation(source, line, column)) from exc


def block_lines(text: str) -> dict[tuple[str, ...], int]:
    """Map each top-level block's kind and labels to the line it starts on."""
    lines: dict[tuple[str, ...], int] = {}
    for match in _BLOCK_PATTERN.finditer(text):
        key = tuple(label for label in match.groups() if label is not None)
        lines.setdefault(key, text.count("\n", 0, match.start()) + 1)
    return lines


def parse(
    text: str,
    *,
    source: str = "<string>",
    registry: ProviderRegistry | None = None,
    variables: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
) -> Graph:
    """Parse a single document into a resource graph.

    Raises ParseError, SchemaError or CycleError.
    """
    from .workspace import Workspace

    ws = Workspace(registry=registry, variables=variables, context=context)
    rendered = render(text, context=context, source=source)
    ws.load(loads(rendered, source=source), source=source, text=rendered)
    graph = ws.graph()
    logger.debug("Parsed %s into %r", source, graph)
    return graph
