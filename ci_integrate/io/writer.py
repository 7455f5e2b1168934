"""
Writer — serialize the integration report to JSON.

Filesystem layout:
    <output_dir>/ci-integration.json
"""
import json
from pathlib import Path

from ci_integrate.io.schema import IntegrationReport

REPORT_FILE_NAME = "ci-integration.json"


def write_report(report: IntegrationReport, output_dir: Path) -> Path:
    """
    Write ci-integration.json into *output_dir*.

    Creates *output_dir* if it does not exist.
    Returns the report path.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    report_path = output_dir / REPORT_FILE_NAME
    report_path.write_text(
        json.dumps(
            report.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        + "\n"
    )
    return report_path
