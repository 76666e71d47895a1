"""templated-file-render: render a local Jinja2 template onto the host."""

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import jinja2

from ..exceptions import ParameterError
from .files import ATTRIBUTES, FileContentEnsureHandler


class TemplatedFileRenderHandler(FileContentEnsureHandler):
    """Render ``src`` locally with the run's variables and upload it to ``dest``.

    The engine passes the current bindings as ``variables`` unless the task
    supplies its own mapping. Rendering is strict: a template referencing an
    unbound name fails the step rather than producing an empty string.
    """

    name = "templated-file-render"
    required = ("src", "dest")
    optional = ("variables",) + ATTRIBUTES
    needs_bindings = True

    def _dest(self, parameters: Mapping[str, Any]) -> str:
        return parameters["dest"]

    def desired_content(self, parameters: Mapping[str, Any]) -> bytes:
        src = Path(parameters["src"]).expanduser()
        env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(src.parent)),
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        try:
            template = env.get_template(src.name)
            return template.render(dict(parameters.get("variables") or {})).encode()
        except jinja2.TemplateNotFound:
            raise ParameterError(f"Template not found: {src}", src=str(src)) from None
        except jinja2.UndefinedError as e:
            raise ParameterError(f"Template {src.name}: {e.message}", src=str(src)) from e
        except jinja2.TemplateSyntaxError as e:
            raise ParameterError(f"Template {src.name} line {e.lineno}: {e.message}", src=str(src)) from e
