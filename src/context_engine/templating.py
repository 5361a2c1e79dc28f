"""
Placeholder grammar for message text.

Three placeholder classes are recognised, in this precedence:
- {{{expr}}}  escaped interpolation, the value is HTML-escaped
- {{expr}}    raw interpolation, the value is inserted as-is
- {%code%}    template logic (if/for/set) evaluated against the variables

Expansion runs on Jinja2's sandboxed environment, so expressions cannot reach
attributes or callables outside the variables they are given.
"""

import json
import re
from functools import lru_cache, wraps
from typing import Any, Dict, Mapping, Set, Union, List

from jinja2 import StrictUndefined, Template
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment
from markupsafe import Markup, escape

from .utils import ContextEngineError


class TemplateExpansionError(ContextEngineError):
    """Raised when a text cannot be expanded against the given variables."""
    pass


class TemplateVariableError(ContextEngineError):
    """Raised when a variable value is outside the supported value types."""
    pass


# Values that may be bound to a placeholder variable
VariableValue = Union[str, int, float, bool, None, List[Any], Dict[str, Any]]

ESCAPE_PATTERN = re.compile(r"\{\{\{(.+?)\}\}\}")
INTERPOLATE_PATTERN = re.compile(r"\{\{(.+?)\}\}")
EVALUATE_PATTERN = re.compile(r"\{%(.+?)%\}")

# One alternation in precedence order, so {{{x}}} is never read as {{x}}
_SCAN_PATTERN = re.compile(r"\{\{\{(.+?)\}\}\}|\{\{(.+?)\}\}|\{%(.+?)%\}")

_SCALAR_TYPES = (str, int, float, bool, type(None))

# Bounds on what a single message may make the sandbox compute
MAX_POWER = 4_000_000
MAX_STRING_LENGTH = 100_000
MAX_EXPANDED_LENGTH = 1_000_000


def stringify_value(value: Any) -> str:
    """
    Render a variable value for interpolation.

    None renders as an empty string, booleans as true/false and lists or
    dicts as compact JSON. Integral floats below 1e21 drop the decimal part
    (1.0 renders as 1); other floats keep Python formatting, so 1e-05 stays
    1e-05. Anything else goes through str().
    """
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return str(value)


def escape_value(value: Any) -> Markup:
    return escape(stringify_value(value))


class BoundedSandboxedEnvironment(SandboxedEnvironment):
    """Sandbox that also refuses oversized powers and repetitions."""
    intercepted_binops = frozenset(["*", "**"])

    def call_binop(self, context, operator, left, right):
        if operator == "**":
            if _is_number(left) and _is_number(right) and (abs(left) > MAX_POWER or abs(right) > MAX_POWER):
                raise SecurityError(f"power with operand above {MAX_POWER} is not allowed")
        elif operator == "*":
            for sequence, count in ((left, right), (right, left)):
                if hasattr(sequence, "__len__") and _is_number(count) and len(sequence) * count > MAX_STRING_LENGTH:
                    raise SecurityError(f"repetition longer than {MAX_STRING_LENGTH} items is not allowed")
        return super().call_binop(context, operator, left, right)

    def call(__self, __context, __obj, *args, **kwargs):
        # str.center/ljust/zfill and friends take a target width
        _check_numeric_arguments(args, kwargs)
        return super().call(__context, __obj, *args, **kwargs)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_numeric_arguments(args, kwargs) -> None:
    for value in list(args) + list(kwargs.values()):
        if _is_number(value) and abs(value) > MAX_STRING_LENGTH:
            raise SecurityError(f"numeric argument above {MAX_STRING_LENGTH} is not allowed")


def _bounded_filter(func):
    @wraps(func)
    def wrapper(value, *args, **kwargs):
        _check_numeric_arguments(args, kwargs)
        return func(value, *args, **kwargs)
    return wrapper


_environment = BoundedSandboxedEnvironment(
    block_start_string="{%",
    block_end_string="%}",
    variable_start_string="{{",
    variable_end_string="}}",
    # Literal "{#" in messages must not open a comment
    comment_start_string="{#@",
    comment_end_string="@#}",
    undefined=StrictUndefined,
    finalize=stringify_value,
    keep_trailing_newline=True,
    autoescape=False,
)
_environment.filters["escape_value"] = escape_value
for _name in ("center", "indent"):
    _environment.filters[_name] = _bounded_filter(_environment.filters[_name])


def validate_variables(variables: Mapping[str, Any]) -> None:
    """
    Check that every value is a string, number, boolean, None, list or dict.

    Raises:
        TemplateVariableError: On the first unsupported value, with its path
    """
    for name, value in variables.items():
        if not isinstance(name, str):
            raise TemplateVariableError(f"Variable names must be strings, got {name!r}")
        _validate_value(value, name)


def _validate_value(value: Any, path: str) -> None:
    if isinstance(value, _SCALAR_TYPES):
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _validate_value(item, f"{path}[{i}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TemplateVariableError(f"Dict keys must be strings at {path}, got {key!r}")
            _validate_value(item, f"{path}.{key}")
        return
    raise TemplateVariableError(f"Unsupported value type {type(value).__name__} at {path}")


def has_placeholders(text: Any) -> bool:
    """Quick check for any placeholder marker before attempting expansion."""
    if not text or not isinstance(text, str):
        return False
    return any(
        pattern.search(text)
        for pattern in (INTERPOLATE_PATTERN, ESCAPE_PATTERN, EVALUATE_PATTERN)
    )


def _to_jinja_source(text: str) -> str:
    return ESCAPE_PATTERN.sub(lambda m: "{{ (" + m.group(1) + ") | escape_value }}", text)


@lru_cache(maxsize=256)
def _compile(text: str) -> Template:
    return _environment.from_string(_to_jinja_source(text))


def expand(text: str, variables: Mapping[str, Any]) -> str:
    """
    Expand placeholders in text.

    Args:
        text: Text that may contain placeholders
        variables: Variable name to value mapping

    Returns:
        str: Expanded text, or text unchanged when it has no placeholders

    Raises:
        TemplateExpansionError: On syntax errors, undefined variables,
            sandbox violations or evaluation errors
    """
    if not has_placeholders(text):
        return text

    # Jinja normalises \r\n and \r to \n; carriage returns ride through as a marker
    marker = _carriage_return_marker(text)
    try:
        rendered = _render(_compile(text.replace("\r", marker)), dict(variables))
    except Exception as e:
        raise TemplateExpansionError(f"{type(e).__name__}: {e}") from e
    return rendered.replace(marker, "\r")


def _carriage_return_marker(text: str) -> str:
    """First private-use character that does not occur in text."""
    for codepoint in range(0xE000, 0xF900):
        marker = chr(codepoint)
        if marker not in text:
            return marker
    raise TemplateExpansionError("No free marker character for carriage returns")


def _render(template: Template, variables: Dict[str, Any]) -> str:
    parts = []
    length = 0
    for part in template.generate(variables):
        length += len(part)
        if length > MAX_EXPANDED_LENGTH:
            raise SecurityError(f"expanded text longer than {MAX_EXPANDED_LENGTH} characters")
        parts.append(part)
    return "".join(parts)


def extract_placeholders(text: Any) -> Set[str]:
    """
    Distinct trimmed expressions referenced by any placeholder class.

    Args:
        text: Text to scan

    Returns:
        Set[str]: Expressions, e.g. {"name", "if admin"}
    """
    if not text or not isinstance(text, str):
        return set()

    placeholders = set()
    for match in _SCAN_PATTERN.finditer(text):
        expression = next(group for group in match.groups() if group is not None)
        placeholders.add(expression.strip())
    return placeholders
