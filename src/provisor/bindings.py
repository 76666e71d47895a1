"""Variable bindings and ``{{ name }}`` interpolation.

Bindings are layered. From lowest to highest precedence:

    defaults < inventory < play < extra < facts

A name in a higher layer shadows the same name in every lower layer; values
are never merged, so a mapping in ``play`` replaces a mapping in
``inventory`` wholesale. Only the ``facts`` layer changes during a run, and
only through ``set_fact``.

Interpolation is Jinja2 in strict mode: referencing a name that is bound
nowhere raises ``UnresolvedVariableError`` unless the reference supplies a
default (``{{ port | default(8080) }}``). A string consisting of a single
``{{ expression }}`` evaluates to the native value, so ``"{{ packages }}"``
yields a list rather than its string form.
"""

import copy
import re
from collections.abc import Iterator, Mapping
from typing import Any

import jinja2
from jinja2 import meta
from jinja2.exceptions import TemplateSyntaxError, UndefinedError

from .exceptions import PlaybookError, UnresolvedVariableError

LAYERS = ("defaults", "inventory", "play", "extra", "facts")

_SINGLE_EXPRESSION = re.compile(r"^\s*\{\{(?P<expr>.*?)\}\}\s*$", re.DOTALL)

_env = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


class Bindings(Mapping):
    """Layered, read-mostly variable scope for one host.

    Example:
        >>> b = Bindings(defaults={"port": 80}, play={"port": 3000})
        >>> b["port"]
        3000
        >>> b.set_fact("port", 8080)
        >>> b["port"]
        8080
    """

    def __init__(self, **layers: Mapping[str, Any] | None) -> None:
        unknown = set(layers) - set(LAYERS)
        if unknown:
            raise ValueError(f"Unknown binding layer(s): {', '.join(sorted(unknown))}")
        self._layers: dict[str, dict[str, Any]] = {
            name: dict(layers.get(name) or {}) for name in LAYERS
        }
        self._scope: dict[str, Any] = {}

    def __getitem__(self, key: str) -> Any:
        if key in self._scope:
            return self._scope[key]
        for name in reversed(LAYERS):
            layer = self._layers[name]
            if key in layer:
                return layer[key]
        raise KeyError(key)

    def __iter__(self) -> Iterator[str]:
        seen: set[str] = set()
        for key in self._scope:
            seen.add(key)
            yield key
        for name in reversed(LAYERS):
            for key in self._layers[name]:
                if key not in seen:
                    seen.add(key)
                    yield key

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def layer(self, name: str) -> dict[str, Any]:
        """Return a copy of one layer."""
        return dict(self._layers[name])

    def set_fact(self, name: str, value: Any) -> None:
        """Bind ``name`` in the runtime facts layer."""
        self._layers["facts"][name] = value

    def update_facts(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self.set_fact(name, value)

    def scoped(self, **values: Any) -> "Bindings":
        """Return a view with extra names (e.g. ``item``) bound on top.

        The view shares the underlying layers, so facts set through it are
        visible to the parent.
        """
        child = Bindings.__new__(Bindings)
        child._layers = self._layers
        child._scope = {**self._scope, **values}
        return child

    def copy(self) -> "Bindings":
        """Deep copy, used to give every host its own independent bindings."""
        clone = Bindings.__new__(Bindings)
        clone._layers = copy.deepcopy(self._layers)
        clone._scope = copy.deepcopy(self._scope)
        return clone

    def to_dict(self) -> dict[str, Any]:
        return {key: self[key] for key in self}


def _variables(bindings: Mapping[str, Any], placeholders: set[str] | None = None) -> dict[str, Any]:
    variables = dict(bindings)
    for name in placeholders or ():
        variables[name] = jinja2.ChainableUndefined(name=name)
    return variables


def is_templated(value: Any) -> bool:
    """True when ``value`` (or anything nested in it) contains a template."""
    if isinstance(value, str):
        return "{{" in value or "{%" in value
    if isinstance(value, Mapping):
        return any(is_templated(k) or is_templated(v) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return any(is_templated(v) for v in value)
    return False


def referenced_names(value: Any) -> set[str]:
    """Collect every variable name referenced by templates inside ``value``."""
    names: set[str] = set()
    if isinstance(value, str):
        if is_templated(value):
            try:
                names |= meta.find_undeclared_variables(_env.parse(value))
            except TemplateSyntaxError as e:
                raise PlaybookError(f"Invalid template {value!r}: {e.message}") from e
    elif isinstance(value, Mapping):
        for k, v in value.items():
            names |= referenced_names(k)
            names |= referenced_names(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            names |= referenced_names(v)
    return names


def render(value: Any, bindings: Mapping[str, Any], placeholders: set[str] | None = None) -> Any:
    """Interpolate every template inside ``value`` against ``bindings``.

    Args:
        value: A string, or lists/mappings nesting strings, to render
        bindings: Variables visible to the templates
        placeholders: Names that are not known yet; they render as empty
            rather than failing, which lets a template be checked for other
            missing names before the placeholders have values

    Raises:
        UnresolvedVariableError: If a referenced name is unbound
        PlaybookError: If a template is syntactically invalid
    """
    if not is_templated(value):
        return value
    return _render(value, _variables(bindings, placeholders))


def _render(value: Any, variables: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return _render_string(value, variables)
    if isinstance(value, Mapping):
        return {_render(k, variables): _render(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [_render(v, variables) for v in value]
    if isinstance(value, tuple):
        return tuple(_render(v, variables) for v in value)
    return value


def _render_string(text: str, variables: dict[str, Any]) -> Any:
    if not is_templated(text):
        return text
    try:
        match = _SINGLE_EXPRESSION.match(text)
        if match and "{{" not in match.group("expr") and "}}" not in match.group("expr"):
            return _evaluate(match.group("expr").strip(), variables, text)
        return _env.from_string(text).render(variables)
    except UndefinedError as e:
        raise UnresolvedVariableError(f"{e.message} in {text!r}", template=text) from e
    except TemplateSyntaxError as e:
        raise PlaybookError(f"Invalid template {text!r}: {e.message}") from e


def _evaluate(expression: str, variables: dict[str, Any], source: str) -> Any:
    result = _env.compile_expression(expression, undefined_to_none=False)(**variables)
    if isinstance(result, jinja2.ChainableUndefined):
        return ""
    if isinstance(result, jinja2.Undefined):
        # Accessing the value raises the UndefinedError naming the variable
        str(result)
        raise UnresolvedVariableError(f"'{expression}' is undefined in {source!r}")
    return result


def evaluate_condition(condition: Any, bindings: Mapping[str, Any]) -> bool:
    """Evaluate a ``when``-style condition to a boolean.

    Accepts booleans, bare expressions (``pkg_count > 0``) and expressions
    wrapped in ``{{ }}``.
    """
    if isinstance(condition, bool):
        return condition
    if condition is None:
        return True
    text = str(condition).strip()
    match = _SINGLE_EXPRESSION.match(text)
    if match:
        text = match.group("expr").strip()
    try:
        return bool(_evaluate(text, _variables(bindings), str(condition)))
    except UndefinedError as e:
        raise UnresolvedVariableError(f"{e.message} in condition {condition!r}") from e
    except TemplateSyntaxError as e:
        raise PlaybookError(f"Invalid condition {condition!r}: {e.message}") from e
