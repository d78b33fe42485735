"""Load the `values.yaml` of a chart and resolve `{{ .Values.x.y }}` expressions.

This is not a template engine. It only supports expressions that consist of a
single dotted path into the values, eg `{{ .Values.finops.resources }}`.

"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from cdparser.models import ErrorKind

# Convenience.
logit = logging.getLogger("app")


def is_template(text: str) -> bool:
    """Return `True` if `text` looks like it contains a template expression."""
    return "{{" in text and "}}" in text


def load(chart_root: Path) -> Tuple[Dict[str, Any], ErrorKind | None]:
    """Return the parsed `values.yaml` of the chart in `chart_root`."""
    fname = chart_root / "values.yaml"
    try:
        values = yaml.safe_load(fname.read_text(encoding="utf8"))
    except FileNotFoundError:
        logit.warning("values file missing", {"path": str(fname)})
        return {}, ErrorKind.VALUES_MISSING
    except (OSError, UnicodeDecodeError) as err:
        logit.warning("cannot read values file", {"path": str(fname), "reason": str(err)})
        return {}, ErrorKind.VALUES_MISSING
    except yaml.YAMLError as err:
        logit.warning("corrupt values file", {"path": str(fname), "reason": str(err)})
        return {}, ErrorKind.VALUES_MALFORMED

    # An empty file is valid and simply means there are no values.
    if values is None:
        return {}, None

    if not isinstance(values, dict):
        logit.warning("values file is not a mapping", {"path": str(fname)})
        return {}, ErrorKind.VALUES_MALFORMED
    return values, None


def _strip_delimiters(expr: str) -> str:
    """Remove the `{{ }}` delimiters, including Helm's `{{-` and `-}}` variants."""
    clean = expr.strip()
    if clean.startswith("{{") and clean.endswith("}}"):
        clean = clean[2:-2]
        clean = clean.removeprefix("-").removesuffix("-")
    return clean.strip()


def _format_scalar(value: Any) -> str:
    """Render `value` the way Go's `%v` verb does, eg `true`, `<nil>` or `1`."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def resolve(expr: str, values: Dict[str, Any]) -> Tuple[str, ErrorKind | None]:
    """Return the value that `expr`, eg `{{ .Values.a.b }}`, points to.

    Strings are returned verbatim and lists are JSON encoded. All other
    values are rendered like Go would, eg `true` instead of `True`.

    """
    path = _strip_delimiters(expr).removeprefix(".Values.")
    if path == "":
        logit.warning("empty template path", {"expr": expr})
        return "", ErrorKind.TEMPLATE_INVALID_PATH

    # Walk the values one path element at a time. Tolerate whitespace around
    # the elements, eg `.Values. a . b`.
    current: Any = values
    for part in path.split("."):
        part = part.strip()
        if part == "":
            continue

        if not isinstance(current, dict):
            logit.warning("invalid path in values", {"expr": expr, "key": part})
            return "", ErrorKind.TEMPLATE_INVALID_PATH

        if part not in current:
            logit.warning("key not found in values", {"expr": expr, "key": part})
            return "", ErrorKind.TEMPLATE_PATH_NOT_FOUND
        current = current[part]

    if isinstance(current, str):
        return current, None
    if isinstance(current, list):
        return json.dumps(current, separators=(",", ":"), default=str), None
    return _format_scalar(current), None
