"""Find the FinOps annotation in the templates of a Helm chart.

Helm templates are not valid YAML until they were rendered. We therefore scan
them line by line instead of parsing them.

"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

import cdparser.values
from cdparser.models import ErrorKind

# Convenience.
logit = logging.getLogger("app")

# Only files with these extensions can contain annotated manifests.
TEMPLATE_SUFFIXES = (".yaml", ".yml", ".tpl")


class _LazyValues:
    """Load the `values.yaml` of a chart on first access only.

    Most annotations are plain JSON lists and do not need the values at all.

    """

    def __init__(self, chart_root: Path):
        self.chart_root = chart_root
        self.loaded = False
        self.values: Dict[str, Any] = {}
        self.err: ErrorKind | None = None

    def get(self) -> Tuple[Dict[str, Any], ErrorKind | None]:
        if not self.loaded:
            self.values, self.err = cdparser.values.load(self.chart_root)
            self.loaded = True
        return self.values, self.err


def _parse_string_list(text: str) -> Tuple[List[str] | None, bool]:
    """Return the JSON list of strings in `text` or `None` for a JSON `null`."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return [], True

    if data is None:
        return None, False

    if not isinstance(data, list) or not all(isinstance(_, str) for _ in data):
        return [], True
    return data, False


def _resolve_or_keep(expr: str, values: _LazyValues) -> str:
    """Return the resolved `expr` or `expr` itself if that is impossible."""
    data, err = values.get()
    if err:
        logit.warning("cannot load values, using template as-is", {"expr": expr})
        return expr

    resolved, err = cdparser.values.resolve(expr, data)
    if err:
        logit.warning("cannot resolve template, using template as-is", {"expr": expr})
        return expr
    return resolved


def extract_resources(
    content: str, annotation_key: str, chart_root: Path
) -> Tuple[List[str] | None, ErrorKind | None]:
    """Return the resource IDs listed in the `annotation_key` annotation.

    Return `None` if `content` does not contain the annotation at all or if
    its value is a JSON `null`. Only the first line with the annotation is
    considered.

    The annotation value is either a JSON list, where each element may be a
    template expression, or a single expression that evaluates to a JSON
    list. Expressions are resolved against the `values.yaml` in `chart_root`.

    """
    if annotation_key not in content:
        return None, None

    values = _LazyValues(chart_root)
    for line in content.splitlines():
        if annotation_key not in line:
            continue

        # Extract the value after the first colon. Skip lines without one.
        _, sep, value = line.partition(":")
        if sep == "":
            continue
        value = value.strip().strip("'\"")

        # Common case: the value is a JSON list, possibly with templated elements.
        resources, err = _parse_string_list(value)
        if not err and resources is None:
            return None, None
        if not err:
            for idx, resource in enumerate(resources):
                if cdparser.values.is_template(resource):
                    resources[idx] = _resolve_or_keep(resource, values)
            return resources, None

        # The entire value may be a template that evaluates to a JSON list.
        if cdparser.values.is_template(value):
            value = _resolve_or_keep(value, values)

        resources, err = _parse_string_list(value)
        if err:
            logit.error("cannot parse annotation value", {"value": value})
            return None, ErrorKind.ANNOTATION_MALFORMED
        return resources, None
    return None, None


def process_template_file(
    fname: Path, annotation_key: str, chart_root: Path
) -> Tuple[List[str] | None, ErrorKind | None]:
    """Read `fname` and return the resources from its annotation (if any)."""
    try:
        content = fname.read_text(encoding="utf8")
    except (OSError, UnicodeDecodeError) as err:
        logit.error("cannot read template", {"path": str(fname), "reason": str(err)})
        return None, ErrorKind.FILESYSTEM_FAILURE

    logit.debug(f"Processing {fname.name}")
    resources, err = extract_resources(content, annotation_key, chart_root)
    if err:
        return None, err

    if resources is not None:
        logit.info(f"Found finops resources in {fname.name}: {resources}")
    return resources, None


def process_templates(
    chart_root: Path, annotation_key: str
) -> Tuple[Dict[str, int], ErrorKind | None]:
    """Count how often each resource ID appears in the templates of the chart.

    Files that cannot be processed are logged and skipped. It is an error if
    the chart has no `templates/` folder.

    """
    templates = chart_root / "templates"
    if not templates.is_dir():
        logit.error("templates directory not found", {"path": str(templates)})
        return {}, ErrorKind.TEMPLATES_DIR_MISSING

    counts: Dict[str, int] = {}
    for fname in sorted(templates.rglob("*")):
        if not fname.is_file() or fname.suffix not in TEMPLATE_SUFFIXES:
            continue

        resources, err = process_template_file(fname, annotation_key, chart_root)
        if err:
            logit.error(f"Error processing {fname.name}", {"reason": err.value})
            continue

        for resource in resources or []:
            counts[resource] = counts.get(resource, 0) + 1

    for key, value in counts.items():
        logit.debug(f"key: {key}, value: {value}")
    return counts, None
