"""
Run summary and result artefact.
"""

import json
from pathlib import Path
from typing import Any

from standby_verifier.logging import get_logger, redact_sensitive
from standby_verifier.scenarios.models import RunReport, ScenarioStatus

logger = get_logger(__name__)

_ICONS = {
    ScenarioStatus.PASS: "v",
    ScenarioStatus.FAIL: "X",
    ScenarioStatus.SKIP: "-",
    ScenarioStatus.TIMEOUT: "T",
}


def log_summary(report: RunReport) -> None:
    """Log one line per scenario, then totals."""
    logger.info("=" * 60)
    logger.info("SUMMARY (%s)", report.run_id)
    logger.info("=" * 60)

    for result in report.results:
        logger.info(
            "[%s] %s: %s (%.1fs)",
            _ICONS[result.status],
            result.name,
            result.status.value,
            result.duration_s,
        )
        if result.reason:
            logger.info("    %s", result.reason)

    counts = report.counts()
    logger.info("-" * 60)
    logger.info(
        "Total: %d passed, %d failed, %d timed out, %d skipped",
        counts[ScenarioStatus.PASS.value],
        counts[ScenarioStatus.FAIL.value],
        counts[ScenarioStatus.TIMEOUT.value],
        counts[ScenarioStatus.SKIP.value],
    )
    if report.passed:
        logger.info("All scenarios PASSED")
    else:
        logger.warning("%d scenario(s) FAILED", report.failed_count)


def write_report(
    report: RunReport,
    results_dir: Path,
    settings_snapshot: dict[str, Any] | None = None,
    extra: dict[str, Any] | None = None,
) -> Path:
    """
    Write the run as JSON to ``<results_dir>/<timestamp>-<group>.json``.

    Everything is passed through redaction before it is written.
    """
    results_dir.mkdir(parents=True, exist_ok=True)
    timestamp = report.started_at.strftime("%Y%m%d-%H%M%S")
    path = results_dir / f"{timestamp}-{report.group}.json"

    payload = report.to_dict()
    payload["settings"] = settings_snapshot or {}
    if extra:
        payload.update(extra)

    path.write_text(json.dumps(redact_sensitive(payload), indent=2, default=str))
    logger.info("Results saved to %s", path)
    return path
