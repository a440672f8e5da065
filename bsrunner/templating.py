import json
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from bsrunner.schemas import AssertionResult, RawTestResult

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


def _yaml_scalar(value: Any) -> str:
    # JSON scalars are valid YAML and keep multi-line messages on one line.
    return json.dumps(value, default=str, ensure_ascii=False)


def _assertion_name(test: AssertionResult) -> str:
    name = " ".join(test.name.split()) or "(unnamed)"
    if test.module:
        return f"{test.module}: {name}"
    return name


templates = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=False,
    undefined=StrictUndefined,
    autoescape=False,
)
templates.filters["yaml_scalar"] = _yaml_scalar
templates.filters["assertion_name"] = _assertion_name


def render_report(result: RawTestResult) -> str:
    """Convert a submitted test result into TAP text."""
    template = templates.get_template("report.tap.j2")
    return template.render(
        tests=result.tests,
        count=len(result.tests) or result.total,
        passed=result.passed,
        failed=result.failed,
        runtime=result.runtime,
    ).rstrip("\n")
