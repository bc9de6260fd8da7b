"""
Template renderer — configuration artifacts from templates + variables.

Two mechanisms:
  1. Conditional blocks, written as comments so templates stay valid
     in their host format:

        # __IF_TLS_ENABLED__
        ... kept only if variable TLS_ENABLED is set ...
        # __ENDIF__

        # __IF_NOT_TLS_ENABLED__
        ... kept only if TLS_ENABLED is unset, empty or false ...
        # __ENDIF__

     ``//`` works as the comment prefix too. Blocks nest.
  2. Interpolation: ``{{ NAME }}`` is replaced by the variable value.

Rendering is pure: the only I/O is reading the template and writing the
artifact at the location the caller chooses (``render_file``).
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pipewright.core.config.variables import SecretRef, VariableSet
from pipewright.core.errors import TemplateError

logger = logging.getLogger(__name__)

_IF_RE = re.compile(r"^\s*(?:#|//)\s*__IF_(NOT_)?(\w+?)__\s*$")
_ENDIF_RE = re.compile(r"^\s*(?:#|//)\s*__ENDIF__\s*$")
_REF_RE = re.compile(r"\{\{\s*([A-Za-z_][\w.-]*)\s*\}\}")


def _is_set(variables: Mapping[str, Any], key: str) -> bool:
    if isinstance(variables, VariableSet):
        return variables.is_set(key)
    value = variables.get(key)
    return value is not None and value is not False and value != ""


def _format(value: Any) -> str:
    if isinstance(value, SecretRef):
        return str(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _apply_conditionals(content: str, variables: Mapping[str, Any]) -> str:
    """Strip conditional blocks whose condition does not hold."""
    out: list[str] = []
    # Each frame: (line number of the IF, whether this block is kept)
    stack: list[tuple[int, bool]] = []

    for lineno, line in enumerate(content.splitlines(keepends=True), start=1):
        m = _IF_RE.match(line)
        if m:
            negate, key = bool(m.group(1)), m.group(2)
            holds = _is_set(variables, key) != negate
            parent_kept = stack[-1][1] if stack else True
            stack.append((lineno, parent_kept and holds))
            continue
        if _ENDIF_RE.match(line):
            if not stack:
                raise TemplateError(f"__ENDIF__ without __IF__ at line {lineno}", detail=f"line {lineno}")
            stack.pop()
            continue
        if not stack or stack[-1][1]:
            out.append(line)

    if stack:
        opened = stack[-1][0]
        raise TemplateError(f"Unclosed __IF__ block opened at line {opened}", detail=f"line {opened}")

    return "".join(out)


def render_text(template: str, variables: Mapping[str, Any]) -> str:
    """Render a template string.

    Raises:
        TemplateError: naming the first unresolved ``{{ reference }}``.
    """
    content = _apply_conditionals(template, variables)

    for m in _REF_RE.finditer(content):
        name = m.group(1)
        if variables.get(name) is None:
            raise TemplateError(f"Unresolved template reference '{name}'", detail=name)

    return _REF_RE.sub(lambda m: _format(variables[m.group(1)]), content)


def render(template: str, variables: Mapping[str, Any]) -> bytes:
    """Render a template to artifact bytes (UTF-8)."""
    return render_text(template, variables).encode("utf-8")


def render_value(value: Any, variables: Mapping[str, Any]) -> Any:
    """Render every string inside a nested structure (step documents)."""
    if isinstance(value, str):
        return render_text(value, variables)
    if isinstance(value, list):
        return [render_value(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: render_value(v, variables) for k, v in value.items()}
    return value


def render_file(source: Path, variables: Mapping[str, Any], output: Path) -> Path:
    """Render ``source`` and write the artifact to ``output``.

    Raises:
        TemplateError: If the template cannot be read or rendered.
    """
    try:
        template = source.read_text(encoding="utf-8")
    except OSError as e:
        raise TemplateError(f"Cannot read template {source}: {e}", detail=str(source)) from e

    try:
        data = render(template, variables)
    except TemplateError as e:
        raise TemplateError(f"{source}: {e.message}", detail=e.detail) from e

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(data)
    logger.info("Rendered %s → %s (%d bytes)", source, output, len(data))
    return output
